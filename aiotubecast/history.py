"""Persistent history of played items."""

from __future__ import annotations

import logging
from pathlib import Path

import orjson
from mashumaro.exceptions import MissingField

from aiotubecast.models import HistoryEntry, Item

logger = logging.getLogger(__name__)

MAX_HISTORY_ITEMS = 100


class HistoryStore:
    """
    Newest-first list of played items, optionally backed by a JSON file.

    Entries are de-duplicated by video id: playing an item again moves it to
    the front. The list is capped at max_items entries.
    """

    _entries: list[HistoryEntry]

    def __init__(self, path: Path | None = None, max_items: int = MAX_HISTORY_ITEMS) -> None:
        """
        Initialize an empty store.

        Args:
            path: JSON file to persist to, None keeps the history in memory only.
            max_items: Maximum number of entries kept.
        """
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}")
        self._path = path
        self._max_items = max_items
        self._entries = []

    @property
    def items(self) -> list[HistoryEntry]:
        """Copy of the entries, newest first."""
        return list(self._entries)

    def __len__(self) -> int:
        """Number of entries."""
        return len(self._entries)

    def load(self) -> None:
        """Load entries from disk, keeping an empty history if the file is unusable."""
        if self._path is None or not self._path.exists():
            return
        try:
            raw = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as err:
            logger.warning("Could not read history from %s: %s", self._path, err)
            return
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed history file %s", self._path)
            return

        entries: list[HistoryEntry] = []
        for value in raw:
            try:
                entries.append(HistoryEntry.from_dict(value))
            except (MissingField, TypeError, ValueError) as err:
                logger.debug("Skipping invalid history entry %r: %s", value, err)
        self._entries = entries[: self._max_items]
        logger.debug("Loaded %d history entries from %s", len(self._entries), self._path)

    def add(self, item: Item) -> HistoryEntry:
        """Record item as played now and persist."""
        entry = HistoryEntry.from_item(item)
        self._entries = [e for e in self._entries if e.video_id != entry.video_id]
        self._entries.insert(0, entry)
        del self._entries[self._max_items :]
        self._save()
        return entry

    def remove(self, entry_id: str) -> bool:
        """Remove an entry by identifier, return whether one was removed."""
        remaining = [e for e in self._entries if e.entry_id != entry_id]
        if len(remaining) == len(self._entries):
            return False
        self._entries = remaining
        self._save()
        return True

    def clear(self) -> None:
        """Remove all entries."""
        self._entries = []
        self._save()

    def _save(self) -> None:
        if self._path is None:
            return
        data = orjson.dumps([entry.to_dict() for entry in self._entries])
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(data)
        except OSError as err:
            logger.error("Could not write history to %s: %s", self._path, err)
