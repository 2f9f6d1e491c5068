"""
Transfer Module - Download/Upload Speed Tests

Wire constants, the server-side endpoint handler and the client-side
test runner.
"""

from .protocol import (
    MIN_BYTES, MAX_BYTES, CHUNK_SIZE, BYTES_PER_MB,
    DIRECTION_DOWN, DIRECTION_UP, DIRECTION_BOTH, DIRECTIONS,
    parse_bytes, format_bytes, mb_to_bytes,
)
from .handler import TransferHandler
from .runner import TestRunner, TestResult, compute_mbps

__all__ = [
    'MIN_BYTES',
    'MAX_BYTES',
    'CHUNK_SIZE',
    'BYTES_PER_MB',
    'DIRECTION_DOWN',
    'DIRECTION_UP',
    'DIRECTION_BOTH',
    'DIRECTIONS',
    'parse_bytes',
    'format_bytes',
    'mb_to_bytes',
    'TransferHandler',
    'TestRunner',
    'TestResult',
    'compute_mbps',
]
