"""
Transfer Endpoint Handler

Server side of the speed test: produces download streams and consumes
upload bodies, keeping the shared statistics in step.

Accounting rules:
- A transfer counts as in flight from the first byte of work until it
  finishes or fails; the in-flight counter is always released
- Downloads are all-or-nothing: a stream that is closed early or whose
  client disconnects is never counted
- Uploads are counted with the bytes actually received, which may
  differ from the declared size
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .protocol import ZERO_CHUNK, format_bytes, iter_chunks
from ..stats import StatsAggregator

logger = logging.getLogger(__name__)


class TransferHandler:
    """
    Serves download streams and sinks uploads for one server.

    The statistics aggregator is injected so several apps (or tests)
    never share hidden global state.
    """

    def __init__(self, stats: StatsAggregator, chunk: bytes = ZERO_CHUNK):
        self.stats = stats
        self.chunk = chunk

    async def stream_download(self, num_bytes: int, peer: str = '-',
                              is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
                              ) -> AsyncIterator[bytes]:
        """
        Yield exactly ``num_bytes`` bytes in chunk-sized pieces.

        Statistics are updated only after the consumer asks for data past
        the final chunk, i.e. once every chunk has been handed off.

        Args:
            num_bytes: Validated stream length
            peer: Remote address for log lines
            is_disconnected: Polled after every chunk; once it returns True
                the stream ends without being recorded
        """
        with self.stats.track_request():
            sent = 0
            try:
                for piece in iter_chunks(num_bytes, self.chunk):
                    yield piece
                    sent += len(piece)
                    if is_disconnected is not None and await is_disconnected():
                        logger.warning(f"Download aborted by {peer} after "
                                       f"{format_bytes(sent)} of {format_bytes(num_bytes)}")
                        return
            except BaseException as e:
                logger.error(f"Download write error for {peer} after "
                             f"{format_bytes(sent)}: {e!r}")
                raise

            self.stats.record_download(num_bytes)

        logger.info(f"[DOWNLOAD] {peer} - {format_bytes(num_bytes)}")

    async def receive_upload(self, body: AsyncIterator[bytes], expected_bytes: int,
                             peer: str = '-') -> int:
        """
        Read and discard an upload body.

        Args:
            body: Async iterator over the request body
            expected_bytes: Size declared in the ``bytes`` parameter
            peer: Remote address for log lines

        Returns:
            Number of bytes actually received

        Raises:
            Whatever the body iterator raises on a read failure; nothing is
            recorded in that case
        """
        with self.stats.track_request():
            uploaded = 0
            try:
                async for piece in body:
                    uploaded += len(piece)
            except Exception as e:
                logger.error(f"Upload read error for {peer}: {e}")
                raise

            if uploaded != expected_bytes:
                logger.warning(f"Warning: {peer} expected {format_bytes(expected_bytes)}, "
                               f"received {format_bytes(uploaded)}")

            self.stats.record_upload(uploaded)

        logger.info(f"[UPLOAD] {peer} - {format_bytes(uploaded)}")
        return uploaded
