"""
Speed Test Transfer Protocol

Design Decision: Transfer Protocol
===================================

Options Considered:
1. Raw TCP with custom framing
   - Lightweight, full control
   - Needs a dedicated client, unusable from a browser

2. WebSocket
   - Bidirectional, browser friendly
   - Framing overhead distorts byte counts

3. Plain HTTP with a size query parameter
   - Works from curl, browsers and any HTTP client
   - Content-Length makes the expected byte count explicit

Decision: Plain HTTP
- GET  /__down?bytes=N  -> server streams N bytes
- POST /__up?bytes=N    -> server reads and discards the request body
- The payload content is irrelevant, only byte count and timing matter

Sizes on the wire are exact byte counts. Client sizes are given in decimal
megabytes (1,000,000 bytes); buffers are sized in binary mebibytes.
"""

import re
from typing import Optional

# Size bounds enforced on both endpoints
MIN_BYTES = 1 * 1024 * 1024             # 1 MiB
MAX_BYTES = 10 * 1024 * 1024 * 1024     # 10 GiB

# One write per chunk when streaming a download
CHUNK_SIZE = 1024 * 1024  # 1 MiB

# Client sizes are decimal megabytes
BYTES_PER_MB = 1_000_000

# Endpoint paths
DOWNLOAD_PATH = '/__down'
UPLOAD_PATH = '/__up'
STATS_PATH = '/__stats'
HEALTH_PATH = '/health'

# Test directions
DIRECTION_DOWN = 'down'
DIRECTION_UP = 'up'
DIRECTION_BOTH = 'both'
DIRECTIONS = (DIRECTION_DOWN, DIRECTION_UP, DIRECTION_BOTH)

# Reusable payload; never mutated
ZERO_CHUNK = bytes(CHUNK_SIZE)

_INTEGER_RE = re.compile(r'[+-]?[0-9]+')


def parse_bytes(value: Optional[str]) -> int:
    """
    Parse and validate the ``bytes`` query parameter.

    Args:
        value: Raw parameter value (None if absent)

    Returns:
        Requested byte count

    Raises:
        ValueError: If the value is missing, not a base-10 integer or
            outside MIN_BYTES..MAX_BYTES
    """
    if value is None or value == '':
        raise ValueError("missing 'bytes' parameter")

    if not _INTEGER_RE.fullmatch(value):
        raise ValueError(f"invalid 'bytes' parameter: {value!r}")
    num_bytes = int(value)

    if num_bytes < MIN_BYTES or num_bytes > MAX_BYTES:
        raise ValueError(
            f"bytes must be between {format_bytes(MIN_BYTES)} and {format_bytes(MAX_BYTES)}"
        )

    return num_bytes


def iter_chunks(num_bytes: int, chunk: bytes = ZERO_CHUNK):
    """Yield buffers from ``chunk`` whose lengths add up to exactly ``num_bytes``."""
    chunk_size = len(chunk)
    view = memoryview(chunk)
    remaining = num_bytes

    while remaining > 0:
        if remaining < chunk_size:
            yield bytes(view[:remaining])
            return
        yield chunk
        remaining -= chunk_size


def mb_to_bytes(size_mb: int) -> int:
    """Convert a decimal megabyte count to bytes."""
    return size_mb * BYTES_PER_MB


def format_bytes(num_bytes: int) -> str:
    """Format bytes as a human-readable binary size."""
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024

    if num_bytes >= gb:
        return f"{num_bytes / gb:.2f} GB"
    if num_bytes >= mb:
        return f"{num_bytes / mb:.2f} MB"
    if num_bytes >= kb:
        return f"{num_bytes / kb:.2f} KB"
    return f"{num_bytes} B"
