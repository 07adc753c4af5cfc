"""Ordered playback queue with a current-position cursor."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from aiotubecast.models import Item

logger = logging.getLogger(__name__)


class PlaybackQueue:
    """
    Ordered list of items plus the index of the current one.

    The queue performs no I/O and holds no locks: it is owned by the event loop
    running the orchestrator and must only be mutated from there.

    Invariant: 0 <= current_index < len(items) whenever the queue is non-empty.
    """

    _items: list[Item]
    _current_index: int

    def __init__(self) -> None:
        """Create an empty queue."""
        self._items = []
        self._current_index = 0

    def __len__(self) -> int:
        """Number of items in the queue."""
        return len(self._items)

    def __iter__(self) -> Iterator[Item]:
        """Iterate over a snapshot of the items."""
        return iter(list(self._items))

    @property
    def items(self) -> list[Item]:
        """Copy of the items in insertion order."""
        return list(self._items)

    @property
    def current_index(self) -> int:
        """Index of the current item (0 for an empty queue)."""
        return self._current_index

    def add(self, item: Item) -> None:
        """Append an item to the end of the queue."""
        self._items.append(item)
        logger.debug("Queued item %s (%d in queue)", item.item_id, len(self._items))

    def update(self, item: Item) -> None:
        """Replace the item with the same identifier in place, no-op if absent."""
        index = self.index_of(item.item_id)
        if index is not None:
            self._items[index] = item

    def remove(self, item_id: str) -> Item | None:
        """Remove an item by identifier and keep the current index in range."""
        index = self.index_of(item_id)
        if index is None:
            return None
        removed = self._items.pop(index)
        if index < self._current_index:
            # Keep pointing at the same item
            self._current_index -= 1
        if self._current_index >= len(self._items):
            self._current_index = max(0, len(self._items) - 1)
        logger.debug("Removed item %s from queue", item_id)
        return removed

    def clear(self) -> None:
        """Remove all items."""
        self._items.clear()
        self._current_index = 0

    def get(self, item_id: str) -> Item | None:
        """Return the item with the given identifier."""
        index = self.index_of(item_id)
        return None if index is None else self._items[index]

    def index_of(self, item_id: str) -> int | None:
        """Return the position of the item with the given identifier."""
        for index, item in enumerate(self._items):
            if item.item_id == item_id:
                return index
        return None

    def current(self) -> Item | None:
        """Return the current item, None if the queue is empty."""
        if not self._items:
            return None
        return self._items[self._current_index]

    def next(self) -> Item | None:
        """Advance to and return the next item, None at the end of the queue."""
        if self._current_index + 1 >= len(self._items):
            return None
        self._current_index += 1
        return self._items[self._current_index]

    def previous(self) -> Item | None:
        """Step back to and return the previous item, None at the start of the queue."""
        if self._current_index <= 0 or not self._items:
            return None
        self._current_index -= 1
        return self._items[self._current_index]

    def jump_to(self, item_id: str) -> Item | None:
        """Make the item with the given identifier current."""
        index = self.index_of(item_id)
        if index is None:
            return None
        self._current_index = index
        return self._items[index]
