"""
Command line entry point.

Example:
    python -m aiotubecast "https://www.youtube.com/watch?v=dQw4w9WgXcQ" --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from pathlib import Path

from aiotubecast.config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_HOST,
    DEFAULT_MAX_BIND_ATTEMPTS,
    DEFAULT_PORT,
    StreamerConfig,
)
from aiotubecast.fetcher import YtDlpFetcher
from aiotubecast.history import HistoryStore
from aiotubecast.pipeline import PlaybackQueue, StateChangedEvent, StreamOrchestrator
from aiotubecast.server import BroadcastServer, StreamAdvertiser
from aiotubecast.transcoder import AvTranscoder

logger = logging.getLogger("aiotubecast")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aiotubecast",
        description="Re-broadcast online audio to every listener on the local network.",
    )
    parser.add_argument("sources", nargs="*", help="video or playlist URLs to queue")
    parser.add_argument("--host", default=DEFAULT_HOST, help="interface to listen on")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="preferred port")
    parser.add_argument(
        "--bind-attempts",
        type=int,
        default=DEFAULT_MAX_BIND_ATTEMPTS,
        help="consecutive ports to try when the preferred one is taken",
    )
    parser.add_argument(
        "--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="broadcast block size in bytes"
    )
    parser.add_argument("--work-dir", type=Path, help="directory for downloads and MP3 files")
    parser.add_argument("--history", type=Path, help="JSON file recording played items")
    parser.add_argument("--mdns", action="store_true", help="advertise the stream via mDNS")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> StreamerConfig:
    options: dict[str, object] = {
        "host": args.host,
        "port": args.port,
        "max_bind_attempts": args.bind_attempts,
        "chunk_size": args.chunk_size,
        "history_path": args.history,
        "advertise_mdns": args.mdns,
    }
    if args.work_dir is not None:
        options["work_dir"] = args.work_dir
    return StreamerConfig(**options)  # type: ignore[arg-type]


async def _run(config: StreamerConfig, sources: list[str]) -> None:
    loop = asyncio.get_running_loop()
    history = HistoryStore(config.history_path) if config.history_path else None
    if history is not None:
        history.load()

    transcoder = AvTranscoder(config.work_dir)
    orchestrator = StreamOrchestrator(
        loop,
        PlaybackQueue(),
        BroadcastServer(loop),
        YtDlpFetcher(config.work_dir),
        transcoder,
        config=config,
        history=history,
        advertiser=StreamAdvertiser() if config.advertise_mdns else None,
    )

    def _on_event(_orchestrator: StreamOrchestrator, event: object) -> None:
        if isinstance(event, StateChangedEvent):
            logger.info("Status: %s", event.error or event.state.label)

    orchestrator.add_event_listener(_on_event)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    await orchestrator.start()
    try:
        for source in sources:
            await orchestrator.submit(source)
        logger.info("Press Ctrl+C to stop")
        await stop_event.wait()
    finally:
        await orchestrator.close()
        await transcoder.close()


def main(argv: list[str] | None = None) -> None:
    """Run the streamer until interrupted."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.verbose:
        logging.getLogger("aiotubecast.fetcher.yt_dlp").setLevel(logging.WARNING)
    try:
        asyncio.run(_run(_build_config(args), args.sources))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
