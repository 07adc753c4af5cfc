from __future__ import annotations

import asyncio
import socket
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio

from aiotubecast.cancellation import CancellationToken
from aiotubecast.config import StreamerConfig
from aiotubecast.errors import DownloadFailed, MetadataFetchFailed
from aiotubecast.history import HistoryStore
from aiotubecast.models import ACTIVE_ITEM_STATUSES, ItemMetadata, ItemStatus, PipelineState
from aiotubecast.pipeline import (
    ItemUpdatedEvent,
    OrchestratorEvent,
    PipelineErrorEvent,
    PlaybackQueue,
    StateChangedEvent,
    StreamOrchestrator,
)
from aiotubecast.server import BroadcastServer, StreamSession

URL_A = "https://www.youtube.com/watch?v=aaaaaaaaaaa"
URL_B = "https://www.youtube.com/watch?v=bbbbbbbbbbb"
URL_C = "https://www.youtube.com/watch?v=ccccccccccc"
PLAYLIST = "https://www.youtube.com/playlist?list=PL123"

# Minimal ID3v2.4 tag with a 10 byte body
ID3_TAG = b"ID3\x04\x00\x00\x00\x00\x00\x0a" + b"\x00" * 10


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _title(source: str) -> str:
    return f"Title {source[-1].upper()}"


async def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class _FakeFetcher:
    """Fetcher resolving every source instantly, with optional gates and failures."""

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir
        self.downloads: list[str] = []
        self.tokens: list[CancellationToken] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.metadata_failures: set[str] = set()
        self.download_failures: set[str] = set()
        self.collection: list[ItemMetadata] = []

    def is_collection(self, source: str) -> bool:
        return "list=" in source

    async def fetch_metadata(self, source: str) -> ItemMetadata:
        await asyncio.sleep(0)
        if source in self.metadata_failures:
            raise MetadataFetchFailed("video unavailable")
        return ItemMetadata(title=_title(source), canonical_url=source, artist="Artist")

    async def fetch_collection_metadata(self, source: str) -> list[ItemMetadata]:
        await asyncio.sleep(0)
        return list(self.collection)

    async def download(
        self, source: str, *, on_progress: Callable[[float], None], token: CancellationToken
    ) -> Path:
        self.downloads.append(source)
        self.tokens.append(token)
        on_progress(50.0)
        if (gate := self.gates.get(source)) is not None:
            await gate.wait()
        if source in self.download_failures:
            raise DownloadFailed("HTTP Error 403")
        path = self.work_dir / f"download_{len(self.downloads)}.webm"
        path.write_bytes(source.encode())
        on_progress(100.0)
        return path


class _FakeTranscoder:
    """Transcoder writing an ID3 tag followed by a body derived from the title."""

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir
        self.artifacts: dict[str, bytes] = {}

    async def convert(
        self,
        source: Path,
        *,
        title: str,
        artist: str | None,
        thumbnail_url: str | None,
        on_progress: Callable[[float], None],
        token: CancellationToken,
    ) -> Path:
        target = self.work_dir / f"{source.stem}.mp3"
        data = ID3_TAG + title.encode() * 40
        target.write_bytes(data)
        source.unlink()
        self.artifacts[title] = data
        on_progress(100.0)
        return target


class _RecordingListener:
    """Broadcast listener recording each chunk with the session title at send time."""

    listener_id = "recorder"
    remote = "127.0.0.1"
    closed = False

    def __init__(self, server: BroadcastServer) -> None:
        self.server = server
        self.received: list[tuple[str | None, bytes]] = []

    def send(self, data: bytes) -> None:
        self.received.append((self.server.session.title, data))

    def close(self, *, force: bool = False) -> None:
        self.closed = True

    def body_for(self, title: str) -> bytes:
        return b"".join(chunk for chunk_title, chunk in self.received if chunk_title == title)


class _Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        port: int | None = None,
        max_bind_attempts: int = 10,
        chunk_interval: float = 0.001,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.config = StreamerConfig(
            host="127.0.0.1",
            port=port or _get_free_port(),
            max_bind_attempts=max_bind_attempts,
            chunk_size=64,
            chunk_interval=chunk_interval,
            buffer_window=0.05,
            work_dir=tmp_path,
        )
        self.queue = PlaybackQueue()
        self.server = BroadcastServer(loop)
        self.fetcher = _FakeFetcher(tmp_path)
        self.transcoder = _FakeTranscoder(tmp_path)
        self.history = HistoryStore()
        self.events: list[OrchestratorEvent] = []
        self.orchestrator = StreamOrchestrator(
            loop,
            self.queue,
            self.server,
            self.fetcher,
            self.transcoder,
            config=self.config,
            history=self.history,
            address_provider=lambda: "192.168.1.50",
        )
        self.orchestrator.add_event_listener(lambda _orch, event: self.events.append(event))
        self.recorder = _RecordingListener(self.server)
        self.server._add_listener(self.recorder)  # type: ignore[arg-type]  # noqa: SLF001

    def item(self, index: int):  # type: ignore[no-untyped-def]
        return self.queue.items[index]


@pytest_asyncio.fixture
async def harness(tmp_path: Path) -> AsyncIterator[_Harness]:
    harness = _Harness(tmp_path)
    await harness.orchestrator.start()
    try:
        yield harness
    finally:
        await harness.orchestrator.close()


@pytest.mark.asyncio
async def test_plays_queue_in_order_with_metadata_before_audio(harness: _Harness) -> None:
    orch = harness.orchestrator
    await orch.submit(URL_A)
    await orch.submit(URL_B)
    assert len(harness.queue) == 2
    assert harness.item(1).status is ItemStatus.QUEUED

    # B served and the queue ran dry afterwards
    await _wait_for(
        lambda: len(harness.history) == 2 and harness.server.session.header is None
    )

    artifact_a = harness.transcoder.artifacts["Title A"]
    artifact_b = harness.transcoder.artifacts["Title B"]
    assert harness.recorder.body_for("Title A") == artifact_a
    assert harness.recorder.body_for("Title B") == artifact_b
    assert b"".join(chunk for _title, chunk in harness.recorder.received) == artifact_a + artifact_b
    assert harness.recorder.received[0][0] == "Title A"

    assert orch.state is PipelineState.SERVING
    assert orch.stream_url == f"http://192.168.1.50:{harness.config.port}/stream.mp3"
    assert orch.active_port == harness.config.port
    assert harness.queue.current_index == 1
    assert [item.status for item in harness.queue] == [ItemStatus.READY, ItemStatus.READY]
    assert [entry.title for entry in harness.history.items] == ["Title B", "Title A"]
    assert harness.fetcher.downloads == [URL_A, URL_B]

    states = [event.state for event in harness.events if isinstance(event, StateChangedEvent)]
    assert states[:4] == [
        PipelineState.FETCHING_METADATA,
        PipelineState.DOWNLOADING,
        PipelineState.CONVERTING,
        PipelineState.SERVING,
    ]


@pytest.mark.asyncio
async def test_previous_artifact_deleted_when_next_serves(harness: _Harness) -> None:
    orch = harness.orchestrator
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    first_artifact = Path(harness.item(0).local_path or "")
    assert first_artifact.exists()

    await orch.submit(URL_B)
    await _wait_for(lambda: harness.item(1).status is ItemStatus.PLAYING)
    assert not first_artifact.exists()


@pytest.mark.asyncio
async def test_submit_while_busy_only_enqueues(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_A] = asyncio.Event()
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.DOWNLOADING)
    await _wait_for(lambda: orch.download_progress == 0.5)
    assert harness.item(0).progress == 0.5

    await orch.submit(URL_B)
    await _wait_for(lambda: harness.item(1).metadata_resolved)
    assert harness.item(1).title == "Title B"
    assert harness.item(1).status is ItemStatus.QUEUED
    assert orch.current_item == harness.item(0)
    assert orch.state is PipelineState.DOWNLOADING
    assert harness.fetcher.downloads == [URL_A]
    # Session shows the downloading item, artist falls back to the placeholder
    assert harness.server.session.title == "Title A"


@pytest.mark.asyncio
async def test_submit_play_now_interrupts(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_A] = asyncio.Event()
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.DOWNLOADING)

    await orch.submit(URL_B, play_now=True)
    assert harness.fetcher.tokens[0].cancelled
    assert harness.item(0).status is ItemStatus.QUEUED
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    assert orch.current_item is not None
    assert orch.current_item.source_url == URL_B


@pytest.mark.asyncio
async def test_skip_cancels_current_and_plays_next(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_A] = asyncio.Event()
    await orch.submit(URL_A)
    await orch.submit(URL_B)
    await _wait_for(lambda: orch.state is PipelineState.DOWNLOADING)

    await orch.skip()
    assert harness.fetcher.tokens[0].cancelled
    assert harness.item(0).status is ItemStatus.QUEUED
    assert harness.queue.current_index == 1

    await _wait_for(lambda: harness.item(1).status is ItemStatus.PLAYING)
    assert harness.recorder.body_for("Title A") == b""


@pytest.mark.asyncio
async def test_skip_during_broadcast_switches_items(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, chunk_interval=0.05)
    orch = harness.orchestrator
    active_counts: list[int] = []

    def _count_active(_orch: StreamOrchestrator, event: OrchestratorEvent) -> None:
        if isinstance(event, ItemUpdatedEvent):
            active_counts.append(
                sum(1 for item in harness.queue if item.status in ACTIVE_ITEM_STATUSES)
            )

    orch.add_event_listener(_count_active)
    await orch.start()
    try:
        await orch.submit(URL_A)
        await orch.submit(URL_B)
        await _wait_for(
            lambda: sum(1 for title, _ in harness.recorder.received if title == "Title A") >= 2
        )
        assert orch.state is PipelineState.SERVING

        before = len(harness.recorder.received)
        await orch.skip()
        assert harness.item(0).status is ItemStatus.READY
        assert harness.queue.current_index == 1

        await _wait_for(lambda: harness.item(1).status is ItemStatus.PLAYING)
        await _wait_for(lambda: harness.recorder.body_for("Title B") != b"")
        late_a = [title for title, _ in harness.recorder.received[before:] if title == "Title A"]
        assert len(late_a) <= 1
        assert harness.item(0).status is ItemStatus.READY
        assert active_counts
        assert max(active_counts) <= 1
    finally:
        await orch.close()


@pytest.mark.asyncio
async def test_skip_and_previous_at_queue_edges_are_ignored(harness: _Harness) -> None:
    orch = harness.orchestrator
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)

    await orch.skip()
    await orch.previous()
    assert orch.state is PipelineState.SERVING
    assert harness.fetcher.downloads == [URL_A]
    assert harness.fetcher.tokens[0].cancelled is False


@pytest.mark.asyncio
async def test_previous_replays_earlier_item(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_B] = asyncio.Event()
    await orch.submit(URL_A)
    await orch.submit(URL_B)
    await _wait_for(lambda: harness.fetcher.downloads == [URL_A, URL_B])

    await orch.previous()
    assert harness.queue.current_index == 0
    await _wait_for(lambda: harness.item(0).status is ItemStatus.PLAYING)
    assert harness.fetcher.downloads == [URL_A, URL_B, URL_A]
    assert harness.item(1).status is ItemStatus.QUEUED


@pytest.mark.asyncio
async def test_download_failure_does_not_advance(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_A] = asyncio.Event()
    harness.fetcher.download_failures.add(URL_A)
    await orch.submit(URL_A)
    await orch.submit(URL_B)
    await _wait_for(lambda: orch.state is PipelineState.DOWNLOADING)

    harness.fetcher.gates[URL_A].set()
    await _wait_for(lambda: orch.state is PipelineState.ERROR)
    assert orch.error_message == "Download failed: HTTP Error 403"
    assert harness.item(0).status is ItemStatus.FAILED
    errors = [event for event in harness.events if isinstance(event, PipelineErrorEvent)]
    assert errors[-1].item_id == harness.item(0).item_id

    await asyncio.sleep(0.2)
    assert orch.state is PipelineState.ERROR
    assert harness.queue.current_index == 0
    assert harness.fetcher.downloads == [URL_A]

    # An explicit skip moves on
    await orch.skip()
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    assert orch.error_message is None
    assert harness.item(1).status is ItemStatus.PLAYING


@pytest.mark.asyncio
async def test_metadata_failure_keeps_item_queued(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.metadata_failures.add(URL_A)
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.ERROR)
    assert orch.error_message == "Failed to fetch metadata: video unavailable"
    assert harness.item(0).status is ItemStatus.QUEUED
    assert harness.fetcher.downloads == []

    # Error state accepts new submissions and plays them right away
    await orch.submit(URL_B)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    assert orch.current_item is not None
    assert orch.current_item.source_url == URL_B


@pytest.mark.asyncio
async def test_collection_submit_queues_all_entries(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.collection = [
        ItemMetadata(title="Title A", canonical_url=URL_A),
        ItemMetadata(title="Title B", canonical_url=URL_B),
        ItemMetadata(title="Title C", canonical_url=URL_C),
    ]
    harness.fetcher.gates[URL_A] = asyncio.Event()
    await orch.submit(PLAYLIST)
    await _wait_for(lambda: orch.state is PipelineState.DOWNLOADING)

    assert [item.title for item in harness.queue] == ["Title A", "Title B", "Title C"]
    assert all(item.metadata_resolved for item in harness.queue)
    assert harness.queue.current_index == 0
    assert harness.fetcher.downloads == [URL_A]


@pytest.mark.asyncio
async def test_stop_resets_everything(harness: _Harness) -> None:
    orch = harness.orchestrator
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    artifact = Path(harness.item(0).local_path or "")

    await orch.stop()
    assert orch.state is PipelineState.IDLE
    assert orch.stream_url is None
    assert orch.active_port is None
    assert not harness.server.is_running
    assert harness.server.session == StreamSession()
    assert harness.item(0).status is ItemStatus.READY
    assert not artifact.exists()


@pytest.mark.asyncio
async def test_status_snapshot(harness: _Harness) -> None:
    orch = harness.orchestrator
    await orch.submit(URL_A)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)

    status = orch.status()
    assert status.state is PipelineState.SERVING
    assert status.label == "Streaming"
    assert status.title == "Title A"
    assert status.artist == "Artist"
    assert status.port == harness.config.port
    assert status.listeners == 1
    assert status.queue[0].source_url == URL_A


@pytest.mark.asyncio
async def test_remote_control_over_http(harness: _Harness) -> None:
    orch = harness.orchestrator
    harness.fetcher.gates[URL_B] = asyncio.Event()
    await orch.submit(URL_A)
    await orch.submit(URL_B)
    await _wait_for(lambda: orch.state is PipelineState.SERVING)
    base = f"http://127.0.0.1:{harness.config.port}"

    async with aiohttp.ClientSession() as session:
        async with session.get(f"{base}/api/status") as resp:
            assert resp.status == 200
            assert (await resp.json())["state"] in ("serving", "downloading")

        async with session.get(f"{base}/api/stop") as resp:
            assert await resp.text() == "OK"

    await _wait_for(lambda: orch.state is PipelineState.IDLE)
    assert not harness.server.is_running


@pytest.mark.asyncio
async def test_server_bind_failure_reported(tmp_path: Path) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        taken = blocker.getsockname()[1]

        harness = _Harness(tmp_path, port=taken, max_bind_attempts=1)
        await harness.orchestrator.start()
        try:
            await harness.orchestrator.submit(URL_A)
            await _wait_for(lambda: harness.orchestrator.state is PipelineState.ERROR)
            message = harness.orchestrator.error_message
            assert message is not None
            assert message.startswith("Server error: ")
            assert harness.recorder.received == []
            # The converted file never went on air and is removed
            assert list(tmp_path.glob("*.mp3")) == []
        finally:
            await harness.orchestrator.close()


@pytest.mark.asyncio
async def test_intents_require_start(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    with pytest.raises(RuntimeError):
        await harness.orchestrator.submit(URL_A)
    # Fire-and-forget requests are dropped with a warning
    harness.orchestrator.request_skip()
