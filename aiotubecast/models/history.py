"""History entries recorded for every item that started serving."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .item import Item


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class HistoryEntry(DataClassORJSONMixin):
    """A single played item."""

    source_url: str
    video_id: str
    title: str
    artist: str | None = None
    thumbnail_url: str | None = None
    played_at: datetime = field(default_factory=_utcnow)
    """Time the item started serving (UTC)."""
    entry_id: str = field(default_factory=lambda: uuid4().hex)

    class Config(BaseConfig):
        """Config for serializing history entries."""

        omit_none = True

    @classmethod
    def from_item(cls, item: Item) -> HistoryEntry:
        """Build a history entry for an item that is being played now."""
        return cls(
            source_url=item.source_url,
            video_id=item.video_id,
            title=item.title,
            artist=item.artist,
            thumbnail_url=item.thumbnail_url,
        )
