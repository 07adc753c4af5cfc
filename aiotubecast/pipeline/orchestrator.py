"""
Stream orchestrator: the pipeline state machine driving the playback queue.

Every state change happens on the owning event loop. Public operations post
intents to a queue that a single actor task executes one at a time. Only the
actor starts a pipeline run or cancels the pipeline and producer tasks.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from aiotubecast.cancellation import CancellationToken, PipelineCancelled
from aiotubecast.config import StreamerConfig
from aiotubecast.errors import (
    CollectionFetchFailed,
    ConversionFailed,
    DownloadFailed,
    MetadataFetchFailed,
    ParseFailed,
    ServerBindFailed,
    TubecastError,
)
from aiotubecast.fetcher import Fetcher
from aiotubecast.history import HistoryStore
from aiotubecast.models import (
    ACTIVE_ITEM_STATUSES,
    PLACEHOLDER_TITLE,
    Item,
    ItemStatus,
    PipelineState,
    StatusPayload,
)
from aiotubecast.server import BroadcastServer, StreamAdvertiser, read_stream_header
from aiotubecast.transcoder import Transcoder
from aiotubecast.util import build_stream_url, get_local_ip

from .queue import PlaybackQueue

logger = logging.getLogger(__name__)

ACTIVE_STATES = frozenset(
    {PipelineState.FETCHING_METADATA, PipelineState.DOWNLOADING, PipelineState.CONVERTING}
)


class OrchestratorEvent:
    """Base event type used by StreamOrchestrator.add_event_listener()."""


@dataclass
class StateChangedEvent(OrchestratorEvent):
    """The pipeline entered a new state."""

    state: PipelineState
    error: str | None = None


@dataclass
class ItemUpdatedEvent(OrchestratorEvent):
    """An item was added to the queue or one of its fields changed."""

    item: Item


@dataclass
class PipelineErrorEvent(OrchestratorEvent):
    """Processing an item failed; the pipeline is in the error state."""

    message: str
    item_id: str | None


@dataclass
class _Submit:
    source: str
    play_now: bool = False


@dataclass
class _Skip:
    pass


@dataclass
class _Previous:
    pass


@dataclass
class _Stop:
    pass


@dataclass
class _Advance:
    token: CancellationToken
    """Token of the run that finished broadcasting."""


_Intent = _Submit | _Skip | _Previous | _Stop | _Advance


def _ignore_progress(_percent: float) -> None:
    """Conversion progress is not tracked per item."""


class StreamOrchestrator:
    """
    Drives one item at a time through metadata, download, conversion and serving.

    Finished artifacts are broadcast in throttled chunks through the
    BroadcastServer; once a track is fully sent and the buffer window elapsed,
    the queue advances to the next item.
    """

    _state: PipelineState
    _error_message: str | None
    _stream_url: str | None
    _download_progress: float
    """Download progress of the active item in range 0.0..1.0."""
    _token: CancellationToken | None
    """Token of the current run; replaced whenever a new item starts."""
    _pipeline_task: asyncio.Task[None] | None
    _producer_task: asyncio.Task[None] | None
    _advance_handle: asyncio.TimerHandle | None
    _actor_task: asyncio.Task[None] | None
    _current_artifact: Path | None
    """Artifact currently (or last) broadcast, deleted when replaced."""
    _exhausted: bool
    """Serving silence after the last queue item finished."""
    _event_cbs: list[Callable[[StreamOrchestrator, OrchestratorEvent], None]]

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: PlaybackQueue,
        server: BroadcastServer,
        fetcher: Fetcher,
        transcoder: Transcoder,
        *,
        config: StreamerConfig | None = None,
        history: HistoryStore | None = None,
        address_provider: Callable[[], str | None] = get_local_ip,
        advertiser: StreamAdvertiser | None = None,
    ) -> None:
        """
        Initialize the orchestrator; call start() before posting intents.

        Args:
            loop: The event loop owning queue, server and orchestrator state.
            queue: The playback queue to drive.
            server: The broadcast server fed with finished artifacts.
            fetcher: Resolves metadata and downloads sources.
            transcoder: Converts downloads into broadcastable MP3 files.
            config: Stream tunables, defaults to StreamerConfig().
            history: Optional store recording every item that starts serving.
            address_provider: Returns the LAN address used in the stream URL.
            advertiser: Optional mDNS advertiser, used if config.advertise_mdns.
        """
        self._loop = loop
        self._queue = queue
        self._server = server
        self._fetcher = fetcher
        self._transcoder = transcoder
        self._config = config or StreamerConfig()
        self._history = history
        self._address_provider = address_provider
        self._advertiser = advertiser
        self._intents: asyncio.Queue[tuple[_Intent, asyncio.Future[None] | None]] = (
            asyncio.Queue()
        )
        self._metadata_tasks: set[asyncio.Task[None]] = set()
        self._run_ids = itertools.count(1)
        self._event_cbs = []
        self._state = PipelineState.IDLE
        self._error_message = None
        self._stream_url = None
        self._download_progress = 0.0
        self._token = None
        self._pipeline_task = None
        self._producer_task = None
        self._advance_handle = None
        self._actor_task = None
        self._current_artifact = None
        self._exhausted = False

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def error_message(self) -> str | None:
        """User-visible message of the last failure while in the error state."""
        return self._error_message

    @property
    def current_item(self) -> Item | None:
        """The queue's current item."""
        return self._queue.current()

    @property
    def download_progress(self) -> float:
        """Download progress of the active item (0.0..1.0)."""
        return self._download_progress

    @property
    def stream_url(self) -> str | None:
        """Shareable URL of the audio stream while the server is running."""
        return self._stream_url

    @property
    def active_port(self) -> int | None:
        """Port the broadcast server is bound to."""
        return self._server.port

    @property
    def queue(self) -> PlaybackQueue:
        """The playback queue driven by this orchestrator."""
        return self._queue

    def status(self) -> StatusPayload:
        """Return a snapshot for the status endpoint."""
        session = self._server.session
        return StatusPayload(
            state=self._state,
            label=self._state.label,
            title=session.title,
            artist=session.artist,
            thumbnail_url=session.thumbnail_url,
            error=self._error_message,
            stream_url=self._stream_url,
            port=self._server.port,
            listeners=self._server.listener_count,
            progress=self._download_progress,
            current_index=self._queue.current_index,
            queue=self._queue.items,
        )

    # Lifecycle

    async def start(self) -> None:
        """Start the actor task and wire the server's remote control."""
        if self._actor_task is not None:
            logger.warning("Orchestrator is already running")
            return
        self._actor_task = self._loop.create_task(self._run_actor())
        self._server.set_control_handlers(
            on_skip=self.request_skip,
            on_stop=self.request_stop,
            on_previous=self.request_previous,
        )
        self._server.set_status_provider(self.status)
        logger.debug("Orchestrator started")

    async def close(self) -> None:
        """Stop playback, the server and the actor task."""
        if self._actor_task is None:
            return
        await self.stop()
        self._actor_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._actor_task
        self._actor_task = None

        for task in list(self._metadata_tasks):
            task.cancel()
        await asyncio.gather(*self._metadata_tasks, return_exceptions=True)
        self._metadata_tasks.clear()

        self._server.set_control_handlers()
        self._server.set_status_provider(None)
        logger.debug("Orchestrator closed")

    # Public intents

    async def submit(self, source: str, *, play_now: bool = False) -> None:
        """
        Submit a source reference (single video or playlist).

        While an item is being processed or played the source is only queued,
        unless play_now is set. Otherwise it starts playing immediately.
        """
        await self._post(_Submit(source, play_now))

    async def skip(self) -> None:
        """Abandon the current item and play the next one."""
        await self._post(_Skip())

    async def previous(self) -> None:
        """Abandon the current item and play the previous one."""
        await self._post(_Previous())

    async def stop(self) -> None:
        """Stop playback and the broadcast server."""
        await self._post(_Stop())

    def request_skip(self) -> None:
        """Post a skip intent without waiting for it."""
        self._post_nowait(_Skip())

    def request_stop(self) -> None:
        """Post a stop intent without waiting for it."""
        self._post_nowait(_Stop())

    def request_previous(self) -> None:
        """Post a previous intent without waiting for it."""
        self._post_nowait(_Previous())

    async def _post(self, intent: _Intent) -> None:
        if self._actor_task is None:
            raise RuntimeError("Orchestrator is not started")
        done: asyncio.Future[None] = self._loop.create_future()
        self._intents.put_nowait((intent, done))
        await done

    def _post_nowait(self, intent: _Intent) -> None:
        if self._actor_task is None:
            logger.warning("Dropping %s, orchestrator is not started", type(intent).__name__)
            return
        self._intents.put_nowait((intent, None))

    # Actor

    async def _run_actor(self) -> None:
        """Execute intents one at a time."""
        while True:
            intent, done = await self._intents.get()
            try:
                await self._handle_intent(intent)
            except Exception as err:
                logger.exception("Error handling %s", type(intent).__name__)
                if done is not None and not done.done():
                    done.set_exception(err)
            else:
                if done is not None and not done.done():
                    done.set_result(None)

    async def _handle_intent(self, intent: _Intent) -> None:
        if isinstance(intent, _Submit):
            await self._handle_submit(intent)
        elif isinstance(intent, _Skip):
            await self._handle_step(forward=True)
        elif isinstance(intent, _Previous):
            await self._handle_step(forward=False)
        elif isinstance(intent, _Stop):
            await self._handle_stop()
        elif isinstance(intent, _Advance):
            await self._handle_advance(intent.token)

    def _is_busy(self) -> bool:
        """Whether an item is being processed or actively played."""
        if self._state in ACTIVE_STATES:
            return True
        if self._pipeline_task is not None and not self._pipeline_task.done():
            return True
        return self._state is PipelineState.SERVING and not self._exhausted

    async def _handle_submit(self, intent: _Submit) -> None:
        collection = self._fetcher.is_collection(intent.source)
        if self._is_busy() and not intent.play_now:
            if collection:
                self._spawn_background(self._enqueue_collection(intent.source))
            else:
                item = Item(source_url=intent.source)
                self._add_item(item)
                self._spawn_background(self._resolve_metadata(item.item_id))
            logger.info("Queued %s", intent.source)
            return

        await self._cancel_current()
        if collection:
            self._start_pipeline(lambda token: self._run_collection(intent.source, token))
            return
        item = Item(source_url=intent.source)
        self._add_item(item)
        self._queue.jump_to(item.item_id)
        self._start_pipeline(lambda token: self._run_item(item.item_id, token))

    async def _handle_step(self, *, forward: bool) -> None:
        index = self._queue.current_index
        if forward and index + 1 >= len(self._queue):
            logger.info("Skip ignored: end of queue")
            return
        if not forward and index <= 0:
            logger.info("Previous ignored: start of queue")
            return
        await self._cancel_current()
        item = self._queue.next() if forward else self._queue.previous()
        assert item is not None
        logger.info("%s to %s", "Skipping" if forward else "Going back", item.title)
        self._start_pipeline(lambda token: self._run_item(item.item_id, token))

    async def _handle_advance(self, token: CancellationToken) -> None:
        self._advance_handle = None
        if token is not self._token or token.cancelled:
            logger.debug("Ignoring stale advance for %r", token)
            return
        self._leave_current()
        item = self._queue.next()
        if item is None:
            logger.info("Queue finished, serving silence until new items are submitted")
            self._exhausted = True
            self._server.set_stream_header(None)
            return
        self._start_pipeline(lambda new_token: self._run_item(item.item_id, new_token))

    async def _handle_stop(self) -> None:
        await self._cancel_current()
        if self._advertiser is not None:
            await self._advertiser.stop()
        await self._server.stop()
        self._server.clear_session()
        self._discard_artifact()
        self._stream_url = None
        self._exhausted = False
        self._set_state(PipelineState.IDLE)
        logger.info("Playback stopped")

    # Task management

    def _start_pipeline(self, factory: Callable[[CancellationToken], Any]) -> None:
        """Start a new pipeline run with a fresh cancellation token."""
        self._token = CancellationToken(f"run-{next(self._run_ids)}")
        self._exhausted = False
        self._download_progress = 0.0
        self._pipeline_task = self._loop.create_task(factory(self._token))

    async def _cancel_current(self) -> None:
        """Cancel the current run and its producer; wait until both finished."""
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None
        if self._token is not None:
            self._token.cancel()
        tasks = [
            task
            for task in (self._producer_task, self._pipeline_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._producer_task = None
        self._pipeline_task = None
        self._leave_current()

    def _leave_current(self) -> None:
        """Reset the status of the item the pipeline is leaving."""
        item = self._queue.current()
        if item is None:
            return
        if item.status is ItemStatus.PLAYING:
            self._patch_item(item.item_id, status=ItemStatus.READY)
        elif item.status in ACTIVE_ITEM_STATUSES:
            self._patch_item(item.item_id, status=ItemStatus.QUEUED, progress=0.0)
        self._download_progress = 0.0

    def _spawn_background(self, coro: Any) -> None:
        task = self._loop.create_task(coro)
        self._metadata_tasks.add(task)
        task.add_done_callback(self._metadata_tasks.discard)

    # Pipeline

    async def _run_collection(self, source: str, token: CancellationToken) -> None:
        """Resolve a playlist, queue its entries and play the first one."""
        self._set_state(PipelineState.FETCHING_METADATA)
        try:
            entries = await self._fetcher.fetch_collection_metadata(source)
            if not entries:
                raise CollectionFetchFailed("no playable entries")
        except (CollectionFetchFailed, ParseFailed) as err:
            self._fail(str(err), None)
            return
        except Exception as err:
            logger.exception("Unexpected error while loading playlist %s", source)
            self._fail(f"Unexpected error: {err}", None)
            return

        items = [Item.from_metadata(metadata) for metadata in entries]
        for item in items:
            self._add_item(item)
        self._queue.jump_to(items[0].item_id)
        logger.info("Queued %d items from playlist %s", len(items), source)
        await self._run_item(items[0].item_id, token)

    async def _run_item(self, item_id: str, token: CancellationToken) -> None:
        """Take one item from metadata through to serving."""
        artifact: Path | None = None
        try:
            item = self._queue.get(item_id)
            if item is None:
                return
            if not item.metadata_resolved:
                self._set_state(PipelineState.FETCHING_METADATA)
                metadata = await self._fetcher.fetch_metadata(item.source_url)
                item = self._update_item(self._require(item_id).with_metadata(metadata))

            self._server.update_session(
                title=item.title,
                artist=item.artist or PLACEHOLDER_TITLE,
                thumbnail_url=item.thumbnail_url,
            )
            self._download_progress = 0.0
            item = self._patch_item(item_id, status=ItemStatus.DOWNLOADING, progress=0.0)
            self._set_state(PipelineState.DOWNLOADING)
            logger.info("Downloading %s", item.title)
            downloaded = await self._fetcher.download(
                item.source_url,
                on_progress=self._progress_reporter(item_id, token),
                token=token,
            )

            item = self._patch_item(
                item_id, status=ItemStatus.CONVERTING, progress=1.0, local_path=str(downloaded)
            )
            self._download_progress = 1.0
            self._set_state(PipelineState.CONVERTING)
            artifact = await self._transcoder.convert(
                downloaded,
                title=item.title,
                artist=item.artist,
                thumbnail_url=item.thumbnail_url,
                on_progress=_ignore_progress,
                token=token,
            )
            self._patch_item(item_id, status=ItemStatus.READY, local_path=str(artifact))
            await self._serve(item_id, artifact, token)
        except (MetadataFetchFailed, ParseFailed) as err:
            self._fail(str(err), item_id)
        except (DownloadFailed, ConversionFailed) as err:
            self._fail(str(err), item_id, mark_failed=True)
        except ServerBindFailed as err:
            self._fail(f"Server error: {err}", item_id)
        except PipelineCancelled:
            logger.debug("Run %r cancelled", token)
        except Exception as err:
            logger.exception("Unexpected error while processing item %s", item_id)
            self._fail(f"Unexpected error: {err}", item_id, mark_failed=True)
        finally:
            # An artifact that never went on air is not referenced anywhere else
            if artifact is not None and artifact != self._current_artifact:
                artifact.unlink(missing_ok=True)

    async def _serve(self, item_id: str, artifact: Path, token: CancellationToken) -> None:
        """Publish the artifact as the current stream and start the producer."""
        if not self._server.is_running:
            port = await self._server.start(
                self._config.port,
                self._config.host,
                max_attempts=self._config.max_bind_attempts,
            )
            address = self._address_provider()
            self._stream_url = build_stream_url(address, port)
            logger.info("Stream available at %s", self._stream_url or f"port {port}")
            if self._advertiser is not None and self._config.advertise_mdns and address:
                await self._advertiser.start(address, port)

        try:
            header = await self._loop.run_in_executor(None, read_stream_header, artifact)
        except OSError as err:
            raise ConversionFailed(str(err)) from err
        token.raise_if_cancelled()

        item = self._require(item_id)
        # Session metadata must be in place before the first chunk goes out
        self._server.update_session(
            title=item.title, artist=item.artist, thumbnail_url=item.thumbnail_url
        )
        self._server.set_stream_header(header)
        if self._current_artifact != artifact:
            self._discard_artifact()
        self._current_artifact = artifact

        item = self._patch_item(item_id, status=ItemStatus.PLAYING)
        if self._history is not None:
            await self._loop.run_in_executor(None, self._history.add, item)
        self._set_state(PipelineState.SERVING)
        logger.info("Now streaming %s", item.title)
        self._producer_task = self._loop.create_task(self._produce(item_id, artifact, token))

    async def _produce(self, item_id: str, artifact: Path, token: CancellationToken) -> None:
        """Broadcast the artifact in throttled chunks, then schedule the advance."""
        chunk_size = self._config.chunk_size
        sent = 0
        try:
            with artifact.open("rb") as audio:
                while not token.cancelled:
                    chunk = await self._loop.run_in_executor(None, audio.read, chunk_size)
                    if not chunk:
                        break
                    self._server.broadcast(chunk)
                    sent += len(chunk)
                    await asyncio.sleep(self._config.chunk_interval)
        except OSError as err:
            logger.error("Reading %s failed: %s", artifact, err)
            self._fail(f"Streaming failed: {err}", item_id)
            return
        if token.cancelled:
            return
        logger.debug("Broadcast of %s finished (%d bytes)", artifact.name, sent)
        self._advance_handle = self._loop.call_later(
            self._config.buffer_window, self._post_nowait, _Advance(token)
        )

    # Helpers

    def _progress_reporter(
        self, item_id: str, token: CancellationToken
    ) -> Callable[[float], None]:
        """Return a progress callback that is safe to call from worker threads."""

        def _report(percent: float) -> None:
            self._loop.call_soon_threadsafe(self._set_progress, item_id, token, percent)

        return _report

    def _set_progress(self, item_id: str, token: CancellationToken, percent: float) -> None:
        if token is not self._token or token.cancelled:
            return
        progress = min(1.0, max(0.0, percent / 100.0))
        self._download_progress = progress
        self._patch_item(item_id, progress=progress)

    def _require(self, item_id: str) -> Item:
        item = self._queue.get(item_id)
        if item is None:
            raise PipelineCancelled(f"item {item_id} left the queue")
        return item

    def _add_item(self, item: Item) -> None:
        self._queue.add(item)
        self._signal_event(ItemUpdatedEvent(item))

    def _update_item(self, item: Item) -> Item:
        self._queue.update(item)
        self._signal_event(ItemUpdatedEvent(item))
        return item

    def _patch_item(self, item_id: str, **changes: Any) -> Item:
        """Apply field changes to the queued item and return the new version."""
        return self._update_item(replace(self._require(item_id), **changes))

    async def _resolve_metadata(self, item_id: str) -> None:
        """Fill in display metadata of a queued item in the background."""
        item = self._queue.get(item_id)
        if item is None or item.metadata_resolved:
            return
        try:
            metadata = await self._fetcher.fetch_metadata(item.source_url)
        except TubecastError as err:
            logger.warning("Could not resolve metadata for %s: %s", item.source_url, err)
            return
        current = self._queue.get(item_id)
        if current is None or current.metadata_resolved:
            return
        self._update_item(current.with_metadata(metadata))

    async def _enqueue_collection(self, source: str) -> None:
        """Queue every entry of a playlist in the background."""
        try:
            entries = await self._fetcher.fetch_collection_metadata(source)
        except TubecastError as err:
            logger.warning("Could not load playlist %s: %s", source, err)
            return
        for metadata in entries:
            self._add_item(Item.from_metadata(metadata))
        logger.info("Queued %d items from playlist %s", len(entries), source)

    def _discard_artifact(self) -> None:
        if self._current_artifact is None:
            return
        try:
            self._current_artifact.unlink(missing_ok=True)
        except OSError as err:
            logger.warning("Could not delete %s: %s", self._current_artifact, err)
        self._current_artifact = None

    def _fail(self, message: str, item_id: str | None, *, mark_failed: bool = False) -> None:
        """Enter the error state; the queue does not advance."""
        logger.error("Pipeline failed: %s", message)
        if mark_failed and item_id is not None and self._queue.get(item_id) is not None:
            self._patch_item(item_id, status=ItemStatus.FAILED)
        self._error_message = message
        self._set_state(PipelineState.ERROR)
        self._signal_event(PipelineErrorEvent(message, item_id))

    def _set_state(self, state: PipelineState) -> None:
        if state is not PipelineState.ERROR:
            self._error_message = None
        if state is self._state:
            return
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self._signal_event(StateChangedEvent(state, self._error_message))

    def add_event_listener(
        self, callback: Callable[[StreamOrchestrator, OrchestratorEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for state and queue changes.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: OrchestratorEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
