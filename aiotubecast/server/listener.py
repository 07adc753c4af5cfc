"""A single HTTP client attached to the audio stream endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiohttp import web

# Unwritten bytes before the listener counts as too slow, about 35 minutes
# of 128 kbit/s audio
MAX_PENDING_BYTES = 32 * 1024 * 1024

STREAM_HEADERS = {
    "Content-Type": "audio/mpeg",
    "Connection": "keep-alive",
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}

logger = logging.getLogger(__name__)


class StreamListener:
    """
    A live connection receiving the broadcast.

    Outgoing chunks are queued by BroadcastServer.broadcast() and written by
    run(), which the request handler awaits for the lifetime of the connection.
    """

    _request: web.Request
    _response: web.StreamResponse
    _to_write: asyncio.Queue[bytes | None]
    """Chunks to be written, None wakes the writer up for shutdown."""
    _pending_bytes: int
    _closed: bool
    _on_close: Callable[[StreamListener], None] | None
    """Called once when the connection ends, for any reason."""

    def __init__(
        self,
        request: web.Request,
        listener_id: str,
        *,
        on_close: Callable[[StreamListener], None] | None = None,
        max_pending_bytes: int = MAX_PENDING_BYTES,
    ) -> None:
        """
        Wrap an incoming stream request.

        Args:
            request: The aiohttp request for the stream endpoint.
            listener_id: Identifier used for logging.
            on_close: Callback invoked once the connection has ended.
            max_pending_bytes: Queued bytes before the listener is dropped.
        """
        self.listener_id = listener_id
        self._request = request
        self._response = web.StreamResponse(status=200, headers=STREAM_HEADERS)
        self._to_write = asyncio.Queue()
        self._pending_bytes = 0
        self._max_pending_bytes = max_pending_bytes
        self._closed = False
        self._on_close = on_close
        self._logger = logger.getChild(listener_id)

    @property
    def response(self) -> web.StreamResponse:
        """The streaming response written to this listener."""
        return self._response

    @property
    def remote(self) -> str | None:
        """Remote address of the listener."""
        return self._request.remote

    @property
    def closed(self) -> bool:
        """Whether the connection is closed or failed."""
        if self._closed:
            return True
        transport = self._request.transport
        return transport is None or transport.is_closing()

    async def handshake(self, header: bytes | None) -> None:
        """
        Send the stream headers and replay the cached header block.

        Must complete before the listener joins the broadcast set, otherwise
        the listener would receive audio it cannot frame.
        """
        async with asyncio.timeout(10):
            await self._response.prepare(self._request)
            if header:
                self._logger.debug("Replaying %d byte stream header", len(header))
                await self._response.write(header)

    def send(self, data: bytes) -> None:
        """
        Queue a chunk for this listener.

        Raises:
            ConnectionResetError: If the connection is already closed.
            ConnectionError: If the listener is too slow and was dropped.
        """
        if self.closed:
            raise ConnectionResetError(f"Listener {self.listener_id} is closed")
        if self._pending_bytes + len(data) > self._max_pending_bytes:
            self._logger.warning(
                "%d bytes pending, listener too slow - disconnecting", self._pending_bytes
            )
            self.close(force=True)
            raise ConnectionError(f"Listener {self.listener_id} is too slow")
        self._pending_bytes += len(data)
        self._to_write.put_nowait(data)

    async def run(self) -> None:
        """Write queued chunks until the connection is closed."""
        try:
            while not self._closed:
                chunk = await self._to_write.get()
                if chunk is None:
                    break
                self._pending_bytes -= len(chunk)
                await self._response.write(chunk)
            self._logger.debug("Listener closed, ending writer")
        except ConnectionError as err:
            self._logger.debug("Connection lost while writing: %s", err)
        finally:
            self._closed = True
            self._notify_closed()

    def close(self, *, force: bool = False) -> None:
        """
        Stop writing to this listener.

        With force, the underlying transport is closed immediately instead of
        letting the request handler finish the response.
        """
        if not self._closed:
            self._closed = True
            while not self._to_write.empty():
                self._to_write.get_nowait()
            self._pending_bytes = 0
            self._to_write.put_nowait(None)
        if force and (transport := self._request.transport) is not None:
            transport.close()

    def _notify_closed(self) -> None:
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            try:
                on_close(self)
            except Exception:
                self._logger.exception("Error in close callback")
