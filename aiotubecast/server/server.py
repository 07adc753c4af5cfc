"""Broadcast server fanning a single audio byte stream out to many HTTP listeners."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from aiohttp import web

from aiotubecast.config import DEFAULT_HOST, DEFAULT_MAX_BIND_ATTEMPTS, DEFAULT_PORT
from aiotubecast.errors import ServerBindFailed
from aiotubecast.models import RequestKind, StatusPayload

from .listener import StreamListener
from .page import render_player_page
from .session import StreamSession

logger = logging.getLogger(__name__)

ControlCallback = Callable[[], None]
StatusProvider = Callable[[], StatusPayload]


class ServerEvent:
    """Base event type used by BroadcastServer.add_event_listener()."""


@dataclass
class ListenerAddedEvent(ServerEvent):
    """A listener completed the stream handshake and joined the broadcast."""

    listener_id: str
    remote: str | None


@dataclass
class ListenerRemovedEvent(ServerEvent):
    """A listener left the broadcast (closed, failed or dropped)."""

    listener_id: str


def classify_request(method: str, path: str) -> RequestKind:
    """
    Classify a request by method and path.

    Checks run in priority order: audio stream, root/index page, control and
    status endpoints, then any other GET falls back to the player page.
    """
    if method != "GET":
        return RequestKind.NOT_FOUND
    lowered = path.lower()
    if "stream.mp3" in lowered or lowered.startswith("/audio"):
        return RequestKind.STREAM
    if lowered == "/" or lowered.startswith("/index"):
        return RequestKind.PAGE
    if lowered.startswith("/api/skip"):
        return RequestKind.SKIP
    if lowered.startswith("/api/stop"):
        return RequestKind.STOP
    if lowered.startswith("/api/previous"):
        return RequestKind.PREVIOUS
    if lowered.startswith("/api/status"):
        return RequestKind.STATUS
    return RequestKind.PAGE


class BroadcastServer:
    """
    HTTP server distributing one audio stream to every connected listener.

    The server, its listener set and its stream session are owned by the event
    loop passed in. Connection handlers only read the session and hand control
    requests to the registered callbacks, which must not block.
    """

    _listeners: set[StreamListener]
    """Listeners that completed the handshake and receive broadcast chunks."""
    _pending_listeners: set[StreamListener]
    """Listeners still in the handshake (header replay) phase."""
    _session: StreamSession
    _event_cbs: list[Callable[[BroadcastServer, ServerEvent], None]]
    _control_cbs: dict[RequestKind, ControlCallback]
    _status_provider: StatusProvider | None
    _app: web.Application | None
    _app_runner: web.AppRunner | None
    _tcp_site: web.TCPSite | None
    _port: int | None
    """Port the server is bound to, None while stopped."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        """
        Initialize a stopped broadcast server.

        Args:
            loop: The event loop owning the server state.
        """
        self._loop = loop
        self._listeners = set()
        self._pending_listeners = set()
        self._session = StreamSession()
        self._event_cbs = []
        self._control_cbs = {}
        self._status_provider = None
        self._listener_ids = itertools.count(1)
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._port = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this server."""
        return self._loop

    @property
    def is_running(self) -> bool:
        """Whether the server is bound and accepting connections."""
        return self._tcp_site is not None

    @property
    def port(self) -> int | None:
        """The port actually bound, which may differ from the requested one."""
        return self._port

    @property
    def session(self) -> StreamSession:
        """Snapshot of the current stream session."""
        return self._session

    @property
    def listeners(self) -> set[StreamListener]:
        """Listeners currently receiving the broadcast."""
        return self._listeners

    @property
    def listener_count(self) -> int:
        """Number of listeners currently receiving the broadcast."""
        return len(self._listeners)

    def set_control_handlers(
        self,
        *,
        on_skip: ControlCallback | None = None,
        on_stop: ControlCallback | None = None,
        on_previous: ControlCallback | None = None,
    ) -> None:
        """Register the callbacks invoked by the remote control endpoints."""
        self._control_cbs = {
            kind: callback
            for kind, callback in (
                (RequestKind.SKIP, on_skip),
                (RequestKind.STOP, on_stop),
                (RequestKind.PREVIOUS, on_previous),
            )
            if callback is not None
        }

    def set_status_provider(self, provider: StatusProvider | None) -> None:
        """Register the callable producing the /api/status payload."""
        self._status_provider = provider

    def _create_web_application(self) -> web.Application:
        """
        Create and configure the aiohttp web application.

        A single catch-all route is used, classification happens in
        classify_request().
        """
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle_request)
        return app

    async def start(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        *,
        max_attempts: int = DEFAULT_MAX_BIND_ATTEMPTS,
    ) -> int:
        """
        Start the server, retrying on the next port when the address is in use.

        :param port: The preferred TCP port.
        :param host: The IP address to listen on ("0.0.0.0" for all interfaces).
        :param max_attempts: Number of consecutive ports to try.
        :return: The port the server is bound to.
        :raises ServerBindFailed: If no port could be bound within max_attempts.
        """
        if self._app_runner is not None:
            logger.warning("Server is already running")
            assert self._port is not None
            return self._port

        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        last_error: OSError | None = None
        for candidate in range(port, min(port + max_attempts, 65536)):
            site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=candidate,
            )
            try:
                await site.start()
            except OSError as err:
                last_error = err
                with suppress(RuntimeError):
                    await site.stop()
                logger.warning("Port %d unavailable (%s), trying %d", candidate, err, candidate + 1)
                continue
            self._tcp_site = site
            self._port = candidate or self._bound_port()
            logger.info("Broadcast server started on %s:%d", host, self._port)
            return self._port

        logger.error("Failed to start server on %s after %d attempt(s)", host, max_attempts)
        await self._app_runner.cleanup()
        self._app_runner = None
        self._app = None
        raise ServerBindFailed(last_error, max_attempts)

    def _bound_port(self) -> int:
        """Port picked by the OS when binding port 0."""
        assert self._app_runner is not None
        for address in self._app_runner.addresses:
            if isinstance(address, tuple):
                return int(address[1])
        raise RuntimeError("Server has no bound TCP address")

    async def stop(self) -> None:
        """Stop the server and force close every connection. Safe to call twice."""
        for listener in list(self._pending_listeners | self._listeners):
            listener.close(force=True)
        self._pending_listeners.clear()
        removed = [listener.listener_id for listener in self._listeners]
        self._listeners.clear()
        for listener_id in removed:
            self._signal_event(ListenerRemovedEvent(listener_id))

        if self._tcp_site is not None:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner is not None:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._port is not None:
            logger.info("Broadcast server on port %d stopped", self._port)
        self._app = None
        self._port = None

    def update_session(
        self,
        *,
        title: str | None,
        artist: str | None,
        thumbnail_url: str | None,
    ) -> None:
        """Replace the display metadata shown to web clients."""
        self._session = self._session.with_metadata(
            title=title, artist=artist, thumbnail_url=thumbnail_url
        )
        logger.debug("Stream session metadata set to %r by %r", title, artist)

    def set_stream_header(self, header: bytes | None) -> None:
        """Replace the header block replayed to listeners joining mid-track."""
        self._session = self._session.with_header(header)

    def clear_session(self) -> None:
        """Forget metadata and cached header."""
        self._session = StreamSession()

    def broadcast(self, data: bytes) -> int:
        """
        Send a chunk to every registered listener.

        Listeners whose connection is already closed are pruned first. A failure
        on one listener removes only that listener; the chunk is not retried.

        Returns:
            The number of listeners the chunk was handed to.
        """
        if not data:
            return 0
        for listener in [listener for listener in self._listeners if listener.closed]:
            self._remove_listener(listener, "connection closed")

        delivered = 0
        for listener in list(self._listeners):
            try:
                listener.send(data)
            except ConnectionError as err:
                self._remove_listener(listener, str(err))
                continue
            delivered += 1
        return delivered

    def _add_listener(self, listener: StreamListener) -> None:
        """Join a listener to the broadcast set. Only valid after its handshake."""
        self._listeners.add(listener)
        logger.info("Listener %s joined from %s", listener.listener_id, listener.remote)
        self._signal_event(ListenerAddedEvent(listener.listener_id, listener.remote))

    def _remove_listener(self, listener: StreamListener, reason: str) -> None:
        """Drop a listener from the broadcast set."""
        if listener not in self._listeners:
            return
        self._listeners.discard(listener)
        listener.close(force=True)
        logger.info("Listener %s left: %s", listener.listener_id, reason)
        self._signal_event(ListenerRemovedEvent(listener.listener_id))

    def _handle_listener_closed(self, listener: StreamListener) -> None:
        self._pending_listeners.discard(listener)
        self._remove_listener(listener, "connection ended")

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Dispatch a request according to classify_request()."""
        kind = classify_request(request.method, request.path)
        logger.debug(
            "%s %s from %s -> %s", request.method, request.path, request.remote, kind.value
        )
        if kind is RequestKind.STREAM:
            return await self._handle_stream_request(request)
        if kind is RequestKind.PAGE:
            return web.Response(text=render_player_page(self._session), content_type="text/html")
        if kind in (RequestKind.SKIP, RequestKind.STOP, RequestKind.PREVIOUS):
            return self._handle_control_request(kind)
        if kind is RequestKind.STATUS:
            return self._handle_status_request()
        return web.Response(status=404, text="Not Found", content_type="text/plain")

    async def _handle_stream_request(self, request: web.Request) -> web.StreamResponse:
        """
        Run the stream handshake, then keep the listener attached to the broadcast.

        The listener only joins the broadcast set once its headers and the
        cached stream header were written.
        """
        listener = StreamListener(
            request,
            f"listener-{next(self._listener_ids)}",
            on_close=self._handle_listener_closed,
        )
        self._pending_listeners.add(listener)
        try:
            sent_header = self._session.header
            await listener.handshake(sent_header)
            # A new track may have started while the handshake was in flight
            while (current_header := self._session.header) is not sent_header:
                sent_header = current_header
                if current_header:
                    await listener.response.write(current_header)
        except (ConnectionError, TimeoutError) as err:
            logger.debug("Stream handshake with %s failed: %s", request.remote, err)
            listener.close(force=True)
            return listener.response
        finally:
            self._pending_listeners.discard(listener)

        if not self.is_running or listener.closed:
            listener.close(force=True)
            return listener.response

        self._add_listener(listener)
        await listener.run()
        return listener.response

    def _handle_control_request(self, kind: RequestKind) -> web.Response:
        """Invoke the remote control callback and acknowledge immediately."""
        callback = self._control_cbs.get(kind)
        if callback is None:
            logger.debug("No handler registered for %s request", kind.value)
        else:
            logger.info("Remote %s command received", kind.value)
            try:
                callback()
            except Exception:
                logger.exception("Error in %s handler", kind.value)
        return web.Response(text="OK", content_type="text/plain")

    def _handle_status_request(self) -> web.Response:
        if self._status_provider is None:
            return web.Response(status=503, text="Unavailable", content_type="text/plain")
        payload = self._status_provider()
        return web.Response(text=payload.to_json(), content_type="application/json")

    def add_event_listener(
        self, callback: Callable[[BroadcastServer, ServerEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for listener changes of the server.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: ServerEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
