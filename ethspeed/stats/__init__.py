"""
Stats Module - Server Statistics

Thread-safe counters shared by all transfer requests.
"""

from .aggregator import AtomicCounter, ReadWriteLock, StatsAggregator, StatsSnapshot, format_rfc3339

__all__ = [
    'AtomicCounter',
    'ReadWriteLock',
    'StatsAggregator',
    'StatsSnapshot',
    'format_rfc3339',
]
