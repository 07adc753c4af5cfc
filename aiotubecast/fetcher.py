"""Source retrieval: metadata extraction and audio download through yt-dlp."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadCancelled, DownloadError

from aiotubecast.cancellation import CancellationToken, PipelineCancelled
from aiotubecast.errors import (
    CollectionFetchFailed,
    DownloadFailed,
    MetadataFetchFailed,
    ParseFailed,
)
from aiotubecast.models import ItemMetadata

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
"""Receives download progress in percent (0..100). May be called from a worker thread."""

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


class Fetcher(Protocol):
    """Retrieves metadata and audio for source references."""

    def is_collection(self, source: str) -> bool:
        """Return True if source refers to a collection (playlist)."""
        ...

    async def fetch_metadata(self, source: str) -> ItemMetadata:
        """Resolve display metadata for a single source."""
        ...

    async def fetch_collection_metadata(self, source: str) -> list[ItemMetadata]:
        """Resolve metadata for every entry of a collection."""
        ...

    async def download(
        self, source: str, *, on_progress: ProgressCallback, token: CancellationToken
    ) -> Path:
        """Download the audio of source and return the local file."""
        ...


def is_collection_reference(source: str) -> bool:
    """Return True if the source URL carries a playlist (list=) parameter."""
    return "list" in parse_qs(urlparse(source).query)


def _pick_thumbnail(info: dict[str, Any]) -> str | None:
    if thumbnail := info.get("thumbnail"):
        return str(thumbnail)
    thumbnails = info.get("thumbnails") or []
    # yt-dlp orders thumbnails from worst to best
    for candidate in reversed(thumbnails):
        if isinstance(candidate, dict) and candidate.get("url"):
            return str(candidate["url"])
    return None


def _metadata_from_info(info: dict[str, Any], fallback_url: str) -> ItemMetadata:
    """Map a yt-dlp info dict onto ItemMetadata."""
    duration = info.get("duration")
    artist = info.get("uploader") or info.get("channel")
    return ItemMetadata(
        title=str(info.get("title") or "Unknown"),
        canonical_url=str(info.get("webpage_url") or info.get("original_url") or fallback_url),
        artist=str(artist) if artist else None,
        thumbnail_url=_pick_thumbnail(info),
        duration=float(duration) if isinstance(duration, int | float) else None,
    )


def _entry_url(entry: dict[str, Any]) -> str | None:
    """URL of a flat playlist entry, None if it cannot be played."""
    url = entry.get("webpage_url") or entry.get("url")
    if isinstance(url, str) and url.startswith(("http://", "https://")):
        return url
    if video_id := entry.get("id"):
        return WATCH_URL.format(video_id=video_id)
    return None


class YtDlpFetcher:
    """Fetcher implementation backed by the yt-dlp Python API."""

    def __init__(self, work_dir: Path, *, options: dict[str, Any] | None = None) -> None:
        """
        Initialize the fetcher.

        Args:
            work_dir: Directory downloads are written to.
            options: Extra YoutubeDL options (e.g. proxy, cookiefile).
        """
        self._work_dir = work_dir
        self._base_options: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "logger": logger.getChild("yt_dlp"),
            **(options or {}),
        }

    def is_collection(self, source: str) -> bool:
        """Return True if source refers to a playlist."""
        return is_collection_reference(source)

    async def fetch_metadata(self, source: str) -> ItemMetadata:
        """Resolve display metadata for a single video."""
        logger.debug("Fetching metadata for %s", source)
        try:
            info = await self._run(self._extract_info, source, {"noplaylist": True})
        except DownloadError as err:
            raise MetadataFetchFailed(str(err)) from err
        if not isinstance(info, dict):
            raise ParseFailed
        return _metadata_from_info(info, source)

    async def fetch_collection_metadata(self, source: str) -> list[ItemMetadata]:
        """Resolve metadata for every playable entry of a playlist."""
        logger.debug("Fetching playlist metadata for %s", source)
        try:
            info = await self._run(
                self._extract_info, source, {"noplaylist": False, "extract_flat": "in_playlist"}
            )
        except DownloadError as err:
            raise CollectionFetchFailed(str(err)) from err
        if not isinstance(info, dict) or info.get("entries") is None:
            raise ParseFailed

        result: list[ItemMetadata] = []
        for entry in info["entries"]:
            if not isinstance(entry, dict) or (url := _entry_url(entry)) is None:
                continue
            result.append(_metadata_from_info(entry, url))
        logger.info("Playlist %s resolved to %d entries", source, len(result))
        return result

    async def download(
        self, source: str, *, on_progress: ProgressCallback, token: CancellationToken
    ) -> Path:
        """
        Download the best available audio of source into the work directory.

        The download observes token from yt-dlp's progress hook and aborts once
        it is cancelled.
        """
        self._work_dir.mkdir(parents=True, exist_ok=True)
        try:
            path = await self._run(self._download, source, uuid4().hex, on_progress, token)
        except DownloadError as err:
            raise DownloadFailed(str(err)) from err
        if not path.is_file():
            raise DownloadFailed(f"output file {path} is missing")
        logger.debug("Downloaded %s to %s", source, path)
        return path

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _extract_info(self, source: str, options: dict[str, Any]) -> Any:
        """
        Run metadata extraction.

        NOTE: This method is blocking and runs in an executor.
        """
        with YoutubeDL({**self._base_options, **options, "skip_download": True}) as ydl:
            return ydl.extract_info(source, download=False)

    def _download(
        self,
        source: str,
        download_id: str,
        on_progress: ProgressCallback,
        token: CancellationToken,
    ) -> Path:
        """
        Run the download.

        Partial files are removed when the download fails or is cancelled.

        NOTE: This method is blocking and runs in an executor.
        """

        def _progress_hook(status: dict[str, Any]) -> None:
            if token.cancelled:
                raise DownloadCancelled("pipeline cancelled")
            if status.get("status") == "finished":
                on_progress(100.0)
                return
            total = status.get("total_bytes") or status.get("total_bytes_estimate")
            downloaded = status.get("downloaded_bytes")
            if total and downloaded is not None:
                on_progress(min(100.0, downloaded * 100.0 / total))

        options = {
            **self._base_options,
            "format": "bestaudio/best",
            "noplaylist": True,
            "outtmpl": str(self._work_dir / f"audio_{download_id}.%(ext)s"),
            "progress_hooks": [_progress_hook],
        }
        try:
            with YoutubeDL(options) as ydl:
                info = ydl.extract_info(source, download=True)
                if not isinstance(info, dict):
                    raise DownloadFailed("no media information returned")
                downloads = info.get("requested_downloads") or []
                if downloads and downloads[0].get("filepath"):
                    return Path(downloads[0]["filepath"])
                return Path(ydl.prepare_filename(info))
        except DownloadCancelled as err:
            self._remove_partial(download_id)
            raise PipelineCancelled(token.name) from err
        except (DownloadError, DownloadFailed):
            self._remove_partial(download_id)
            raise

    def _remove_partial(self, download_id: str) -> None:
        for leftover in self._work_dir.glob(f"audio_{download_id}.*"):
            try:
                leftover.unlink(missing_ok=True)
            except OSError as err:
                logger.warning("Could not delete %s: %s", leftover, err)
