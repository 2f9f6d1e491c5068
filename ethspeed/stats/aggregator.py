"""
Server Statistics Aggregator

Design Decision: Synchronization
================================

Options Considered:
1. asyncio.Lock
   - Fine on the event loop, unsafe from threadpool code
2. One threading.Lock for everything
   - Simple, but readers serialize against each other
3. Read/write lock for counters + atomic counters for concurrency

Decision: Option 3
- Counter updates take the exclusive side of a ReadWriteLock
- Snapshots take the shared side, so readers never block readers
- The in-flight counter and peak are AtomicCounters; the peak is
  maintained with a compare-and-swap retry loop
- Critical sections only copy or bump fields, no I/O under any lock

The aggregator is created by whoever builds the app and passed in
explicitly, so tests can use a fresh instance per app.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Callable, Iterator

logger = logging.getLogger(__name__)


def format_rfc3339(moment: datetime) -> str:
    """Format an aware datetime as RFC3339 with second precision."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class AtomicCounter:
    """
    Integer with atomic load/add/compare-and-swap.

    The internal lock is held only for the duration of a single
    read-modify-write, which is what makes each operation atomic.
    """

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> int:
        with self._lock:
            return self._value

    def add(self, delta: int) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def compare_and_swap(self, expected: int, new: int) -> bool:
        """Set to ``new`` only if the current value equals ``expected``."""
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True


class ReadWriteLock:
    """
    Many readers or one writer.

    Writers wait for active readers to drain; readers arriving while a
    writer is waiting queue behind it so writers cannot starve.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class StatsSnapshot:
    """Consistent point-in-time copy of the server statistics."""
    total_downloads: int
    total_uploads: int
    total_bytes_down: int
    total_bytes_up: int
    total_connections: int
    peak_concurrent: int
    current_concurrent: int
    uptime_seconds: float
    last_request: Optional[datetime]

    @property
    def total_data_gb(self) -> float:
        """Combined transfer volume in decimal gigabytes."""
        return (self.total_bytes_down + self.total_bytes_up) / 1_000_000_000

    def to_dict(self) -> dict:
        """Render as the /__stats response body."""
        return {
            'ok': True,
            'total_downloads': self.total_downloads,
            'total_uploads': self.total_uploads,
            'total_bytes_down': self.total_bytes_down,
            'total_bytes_up': self.total_bytes_up,
            'total_connections': self.total_connections,
            'total_data_gb': round(self.total_data_gb, 2),
            'uptime_seconds': round(self.uptime_seconds),
            'peak_concurrent': self.peak_concurrent,
            'last_request': format_rfc3339(self.last_request) if self.last_request else None,
        }


class StatsAggregator:
    """
    Process-wide transfer statistics.

    Owns every counter; handlers only touch them through
    track_request(), record_download() and record_upload().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = None):
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = ReadWriteLock()

        self._start = clock()
        self.start_time = self._now()

        self._total_downloads = 0
        self._total_uploads = 0
        self._total_bytes_down = 0
        self._total_bytes_up = 0
        # Bumped by uploads only, matching the legacy /__stats output
        self._total_connections = 0
        self._last_request_time: Optional[datetime] = None

        self._current_concurrent = AtomicCounter()
        self._peak_concurrent = AtomicCounter()

    # === Concurrency tracking ===

    @property
    def current_concurrent(self) -> int:
        return self._current_concurrent.load()

    @property
    def peak_concurrent(self) -> int:
        return self._peak_concurrent.load()

    def _update_peak(self, current: int):
        peak = self._peak_concurrent.load()
        while current > peak and not self._peak_concurrent.compare_and_swap(peak, current):
            peak = self._peak_concurrent.load()

    def enter(self) -> int:
        """Mark a transfer as in flight and return the new in-flight count."""
        current = self._current_concurrent.add(1)
        self._update_peak(current)
        return current

    def exit(self) -> int:
        """Mark a transfer as finished and return the new in-flight count."""
        return self._current_concurrent.add(-1)

    @contextmanager
    def track_request(self) -> Iterator[int]:
        """
        Count a transfer as in flight for the duration of the block.

        The decrement runs on every exit path, including exceptions,
        cancellation and generator close.
        """
        current = self.enter()
        try:
            yield current
        finally:
            self.exit()

    # === Completed transfers ===

    def record_download(self, num_bytes: int):
        """Account for a fully streamed download."""
        now = self._now()
        with self._lock.write_locked():
            self._total_downloads += 1
            self._total_bytes_down += num_bytes
            self._last_request_time = now

    def record_upload(self, num_bytes: int):
        """Account for a fully received upload of ``num_bytes`` actual bytes."""
        now = self._now()
        with self._lock.write_locked():
            self._total_uploads += 1
            self._total_bytes_up += num_bytes
            self._total_connections += 1
            self._last_request_time = now

    # === Reporting ===

    def snapshot(self) -> StatsSnapshot:
        """Take a consistent copy of all counters."""
        with self._lock.read_locked():
            total_downloads = self._total_downloads
            total_uploads = self._total_uploads
            total_bytes_down = self._total_bytes_down
            total_bytes_up = self._total_bytes_up
            total_connections = self._total_connections
            last_request = self._last_request_time

        return StatsSnapshot(
            total_downloads=total_downloads,
            total_uploads=total_uploads,
            total_bytes_down=total_bytes_down,
            total_bytes_up=total_bytes_up,
            total_connections=total_connections,
            peak_concurrent=self._peak_concurrent.load(),
            current_concurrent=self._current_concurrent.load(),
            uptime_seconds=self._clock() - self._start,
            last_request=last_request,
        )

    def get_stats(self) -> dict:
        """Get statistics as a JSON-ready dict."""
        return self.snapshot().to_dict()
