"""Conversion of downloaded audio into a tagged MP3 artifact."""

from __future__ import annotations

import asyncio
import logging
import types
from collections.abc import Callable
from functools import partial
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout
from mutagen import MutagenError
from mutagen.id3 import APIC, TIT2, TPE1
from mutagen.mp3 import MP3
from PIL import Image, UnidentifiedImageError

from aiotubecast.cancellation import CancellationToken
from aiotubecast.errors import ConversionFailed

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

MP3_BIT_RATE = 128_000
MP3_SAMPLE_RATE = 44_100
COVER_MAX_SIZE = (600, 600)


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


class Transcoder(Protocol):
    """Converts a downloaded file into the artifact that gets broadcast."""

    async def convert(
        self,
        source: Path,
        *,
        title: str,
        artist: str | None,
        thumbnail_url: str | None,
        on_progress: ProgressCallback,
        token: CancellationToken,
    ) -> Path:
        """Convert source and return the path of the finished artifact."""
        ...


def _process_cover(data: bytes) -> bytes:
    """
    Normalise cover art to a bounded RGB JPEG.

    NOTE: This method is not async friendly.
    """
    with Image.open(BytesIO(data)) as image:
        cover = image.convert("RGB")
    cover.thumbnail(COVER_MAX_SIZE, Image.Resampling.LANCZOS)
    with BytesIO() as img_bytes:
        cover.save(img_bytes, format="JPEG", quality=85)
        return img_bytes.getvalue()


def _write_tags(path: Path, title: str, artist: str | None, cover: bytes | None) -> None:
    """
    Write the ID3 tag (title, artist, cover) at the start of the MP3 file.

    NOTE: This method is not async friendly.
    """
    audio = MP3(path)
    if audio.tags is None:
        audio.add_tags()
    tags = audio.tags
    assert tags is not None
    tags.delall("TIT2")
    tags.add(TIT2(encoding=3, text=title))
    if artist:
        tags.delall("TPE1")
        tags.add(TPE1(encoding=3, text=artist))
    if cover:
        tags.delall("APIC")
        tags.add(APIC(encoding=3, mime="image/jpeg", type=3, desc="Cover", data=cover))
    audio.save()


class AvTranscoder:
    """Transcoder encoding 128 kbit/s, 44.1 kHz MP3 with PyAV."""

    _client_session: ClientSession | None

    def __init__(self, work_dir: Path, client_session: ClientSession | None = None) -> None:
        """
        Initialize the transcoder.

        Args:
            work_dir: Directory the MP3 artifacts are written to.
            client_session: Optional ClientSession used to fetch cover art.
                If None, one is created on first use and closed by close().
        """
        self._work_dir = work_dir
        self._client_session = client_session
        self._owns_session = client_session is None

    async def close(self) -> None:
        """Close the owned ClientSession."""
        if self._owns_session and self._client_session is not None:
            if not self._client_session.closed:
                await self._client_session.close()
            self._client_session = None

    async def convert(
        self,
        source: Path,
        *,
        title: str,
        artist: str | None,
        thumbnail_url: str | None,
        on_progress: ProgressCallback,
        token: CancellationToken,
    ) -> Path:
        """
        Encode source to MP3 and tag it; source is deleted afterwards.

        A missing or broken cover image is logged and the artifact is tagged
        without one.
        """
        loop = asyncio.get_running_loop()
        self._work_dir.mkdir(parents=True, exist_ok=True)
        target = self._work_dir / f"{source.stem}.mp3"
        if target == source:
            target = self._work_dir / f"{source.stem}_converted.mp3"

        cover = await self._fetch_cover(thumbnail_url) if thumbnail_url else None
        token.raise_if_cancelled()

        try:
            await loop.run_in_executor(
                None, partial(self._encode, source, target, on_progress, token)
            )
            await loop.run_in_executor(None, _write_tags, target, title, artist, cover)
        except (OSError, MutagenError) as err:
            target.unlink(missing_ok=True)
            raise ConversionFailed(str(err)) from err
        except BaseException:
            target.unlink(missing_ok=True)
            raise
        finally:
            source.unlink(missing_ok=True)

        logger.debug("Converted %s to %s", source.name, target)
        return target

    async def _fetch_cover(self, url: str) -> bytes | None:
        """Download and normalise the cover image, None on failure."""
        if self._client_session is None:
            self._client_session = ClientSession(timeout=ClientTimeout(total=30))
        try:
            async with self._client_session.get(url) as response:
                response.raise_for_status()
                data = await response.read()
        except (ClientError, TimeoutError) as err:
            logger.warning("Could not fetch cover art from %s: %s", url, err)
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _process_cover, data)
        except (UnidentifiedImageError, OSError) as err:
            logger.warning("Could not process cover art from %s: %s", url, err)
            return None

    def _encode(
        self,
        source: Path,
        target: Path,
        on_progress: ProgressCallback,
        token: CancellationToken,
    ) -> None:
        """
        Decode source and encode it to MP3.

        NOTE: This method is not async friendly.
        """
        av = _get_av()
        try:
            with (
                av.open(str(source)) as in_container,
                av.open(str(target), "w", format="mp3") as out_container,
            ):
                if not in_container.streams.audio:
                    raise ConversionFailed("no audio stream in download")
                in_stream = in_container.streams.audio[0]
                out_stream = out_container.add_stream("mp3", rate=MP3_SAMPLE_RATE)
                encoder: av.AudioCodecContext = out_stream.codec_context
                encoder.bit_rate = MP3_BIT_RATE
                encoder.layout = "stereo"
                encoder.format = "s16p"
                resampler = av.AudioResampler(format="s16p", layout="stereo", rate=MP3_SAMPLE_RATE)

                duration = (
                    in_container.duration / av.time_base if in_container.duration else None
                )
                last_percent = -1
                for frame in in_container.decode(in_stream):
                    token.raise_if_cancelled()
                    for resampled in resampler.resample(frame):
                        out_container.mux(out_stream.encode(resampled))
                    if duration and frame.time is not None:
                        percent = min(100, int(frame.time * 100 / duration))
                        if percent != last_percent:
                            last_percent = percent
                            on_progress(float(percent))

                for resampled in resampler.resample(None):
                    out_container.mux(out_stream.encode(resampled))
                out_container.mux(out_stream.encode(None))
        except av.error.FFmpegError as err:
            raise ConversionFailed(str(err)) from err
        on_progress(100.0)
