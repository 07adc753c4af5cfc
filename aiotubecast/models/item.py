"""
Queue item models.

An Item is one playable unit moving through the pipeline. ItemMetadata is what a
Fetcher resolves for a source reference before (or instead of) downloading it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from uuid import uuid4

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ItemStatus

PLACEHOLDER_TITLE = "Loading..."

_VIDEO_ID_PATTERNS = (
    re.compile(r"v=([a-zA-Z0-9_-]{11})"),
    re.compile(r"youtu\.be/([a-zA-Z0-9_-]{11})"),
    re.compile(r"embed/([a-zA-Z0-9_-]{11})"),
    re.compile(r"/v/([a-zA-Z0-9_-]{11})"),
)


def extract_video_id(url: str) -> str | None:
    """Extract the 11 character video id from the common YouTube URL shapes."""
    for pattern in _VIDEO_ID_PATTERNS:
        if match := pattern.search(url):
            return match.group(1)
    return None


def _new_item_id() -> str:
    return uuid4().hex


@dataclass
class ItemMetadata(DataClassORJSONMixin):
    """Display metadata resolved for a source reference."""

    title: str
    """Display title."""
    canonical_url: str
    """URL to use for downloading this item."""
    artist: str | None = None
    """Uploader or channel name, if known."""
    thumbnail_url: str | None = None
    """URL of the thumbnail image, if any."""
    duration: float | None = None
    """Duration in seconds, if known."""

    class Config(BaseConfig):
        """Config for serializing metadata."""

        omit_none = True


@dataclass
class Item(DataClassORJSONMixin):
    """One playable queued media unit and its pipeline status."""

    source_url: str
    """Source reference the item was submitted with."""
    item_id: str = field(default_factory=_new_item_id)
    """Unique identifier."""
    video_id: str = ""
    """Video id extracted from source_url, 'unknown' if none matched."""
    title: str = PLACEHOLDER_TITLE
    artist: str | None = None
    thumbnail_url: str | None = None
    duration: float | None = None
    local_path: str | None = None
    """Path of the materialized artifact (download, then MP3)."""
    progress: float = 0.0
    """Download progress in range 0.0..1.0."""
    status: ItemStatus = ItemStatus.QUEUED
    metadata_resolved: bool = False
    """True once a Fetcher resolved display metadata for this item."""

    def __post_init__(self) -> None:
        """Derive the video id and validate progress."""
        if not self.video_id:
            self.video_id = extract_video_id(self.source_url) or "unknown"
        if not 0.0 <= self.progress <= 1.0:
            raise ValueError(f"progress must be in range 0..1, got {self.progress}")

    @classmethod
    def from_metadata(cls, metadata: ItemMetadata) -> Item:
        """Create a queued item that already carries resolved metadata."""
        return cls(source_url=metadata.canonical_url).with_metadata(metadata)

    def with_metadata(self, metadata: ItemMetadata) -> Item:
        """Return a copy of this item with the display fields from metadata."""
        return replace(
            self,
            title=metadata.title,
            artist=metadata.artist,
            thumbnail_url=metadata.thumbnail_url,
            duration=metadata.duration,
            metadata_resolved=True,
        )
