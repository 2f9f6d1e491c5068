"""
Test Runner

Client side of the speed test: one timed download or upload request
against a server, turned into a throughput figure.

Timing:
- Download: from just before the request is sent until the last body
  byte has been read
- Upload: the full request/response round trip; throughput uses the
  declared size, not the count echoed back by the server
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable

import httpx

from .protocol import (
    DIRECTION_DOWN, DIRECTION_UP, DOWNLOAD_PATH, STATS_PATH, UPLOAD_PATH,
    format_bytes, mb_to_bytes,
)
from ..errors import SpeedTestError

logger = logging.getLogger(__name__)

# Overall budget for one request, connect to last byte
DEFAULT_HTTP_TIMEOUT = 300.0  # 5 minutes


def compute_mbps(num_bytes: int, elapsed: float) -> float:
    """Throughput in megabits per second."""
    return (num_bytes / elapsed) * 8 / 1_000_000


@dataclass
class TestResult:
    """Outcome of a single timed test."""
    __test__ = False  # keep pytest from collecting this class

    direction: str
    throughput_mbps: float
    elapsed: float  # seconds
    bytes_transferred: int

    def to_dict(self) -> dict:
        return {
            'direction': self.direction,
            'throughput_mbps': self.throughput_mbps,
            'elapsed_seconds': self.elapsed,
            'bytes': self.bytes_transferred,
        }


class TestRunner:
    """
    Runs timed download and upload tests against one server.

    Use as an async context manager so the underlying httpx client is
    closed. An already configured ``httpx.AsyncClient`` may be injected;
    the runner then leaves its lifecycle to the caller.
    """
    __test__ = False

    def __init__(self, server: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 clock: Callable[[], float] = time.perf_counter):
        """
        Args:
            server: Target as host:port (a scheme is added if missing)
            client: Optional pre-built httpx client
            timeout: Overall per-request timeout in seconds
            clock: Monotonic time source used for measurements
        """
        self.base_url = server if '://' in server else f"http://{server}"
        self.base_url = self.base_url.rstrip('/')
        self.clock = clock
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def __aenter__(self) -> 'TestRunner':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    def _elapsed_since(self, start: float) -> float:
        elapsed = self.clock() - start
        if elapsed <= 0:
            raise SpeedTestError("test completed too quickly to measure")
        return elapsed

    async def run_download(self, size_mb: int) -> TestResult:
        """
        Download ``size_mb`` decimal megabytes and time it.

        Raises:
            SpeedTestError: On request, transport or status failures, or
                when the elapsed time is unmeasurable
        """
        num_bytes = mb_to_bytes(size_mb)

        try:
            request = self.client.build_request(
                'GET', f"{self.base_url}{DOWNLOAD_PATH}", params={'bytes': num_bytes}
            )
        except Exception as e:
            raise SpeedTestError(f"request creation failed: {e}") from e

        start = self.clock()
        received = 0
        try:
            response = await self.client.send(request, stream=True)
            try:
                if response.status_code != 200:
                    raise SpeedTestError(f"server returned status {response.status_code}")
                async for chunk in response.aiter_raw():
                    received += len(chunk)
            finally:
                await response.aclose()
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise SpeedTestError(f"download failed: {e}") from e

        elapsed = self._elapsed_since(start)
        mbps = compute_mbps(received, elapsed)

        if received != num_bytes:
            logger.warning(f"Download short read: expected {format_bytes(num_bytes)}, "
                           f"got {format_bytes(received)}")
        logger.debug(f"Downloaded {format_bytes(received)} in {elapsed:.3f}s ({mbps:.1f} Mbps)")

        return TestResult(
            direction=DIRECTION_DOWN,
            throughput_mbps=mbps,
            elapsed=elapsed,
            bytes_transferred=received,
        )

    async def run_upload(self, size_mb: int) -> TestResult:
        """
        Upload ``size_mb`` decimal megabytes and time the round trip.

        Raises:
            SpeedTestError: Same conditions as run_download()
        """
        num_bytes = mb_to_bytes(size_mb)
        payload = bytes(num_bytes)

        try:
            request = self.client.build_request(
                'POST', f"{self.base_url}{UPLOAD_PATH}",
                params={'bytes': num_bytes},
                content=payload,
                headers={'Content-Type': 'application/octet-stream'},
            )
        except Exception as e:
            raise SpeedTestError(f"request creation failed: {e}") from e

        start = self.clock()
        try:
            response = await self.client.send(request)
        except httpx.HTTPError as e:
            raise SpeedTestError(f"upload failed: {e}") from e

        if response.status_code != 200:
            raise SpeedTestError(f"server returned status {response.status_code}")

        elapsed = self._elapsed_since(start)
        mbps = compute_mbps(num_bytes, elapsed)

        try:
            body = response.json()
        except ValueError:
            body = None
        echoed = body.get('bytes') if isinstance(body, dict) else None
        if echoed is not None and echoed != num_bytes:
            logger.warning(f"Server received {format_bytes(echoed)} of {format_bytes(num_bytes)}")
        logger.debug(f"Uploaded {format_bytes(num_bytes)} in {elapsed:.3f}s ({mbps:.1f} Mbps)")

        return TestResult(
            direction=DIRECTION_UP,
            throughput_mbps=mbps,
            elapsed=elapsed,
            bytes_transferred=num_bytes,
        )

    async def fetch_stats(self) -> dict:
        """Fetch the server's /__stats document."""
        try:
            response = await self.client.get(f"{self.base_url}{STATS_PATH}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SpeedTestError(f"stats request failed: {e}") from e
        try:
            body = response.json()
        except ValueError as e:
            raise SpeedTestError(f"invalid stats response: {e}") from e
        if not isinstance(body, dict):
            raise SpeedTestError("invalid stats response: expected a JSON object")
        return body
