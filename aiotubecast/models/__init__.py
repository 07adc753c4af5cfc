"""Models for the aiotubecast streamer."""

from __future__ import annotations

__all__ = [
    "ACTIVE_ITEM_STATUSES",
    "PLACEHOLDER_TITLE",
    "HistoryEntry",
    "Item",
    "ItemMetadata",
    "ItemStatus",
    "PipelineState",
    "RequestKind",
    "StatusPayload",
    "extract_video_id",
    "history",
    "item",
    "status",
    "types",
]

from . import history, item, status, types
from .history import HistoryEntry
from .item import PLACEHOLDER_TITLE, Item, ItemMetadata, extract_video_id
from .status import StatusPayload
from .types import ACTIVE_ITEM_STATUSES, ItemStatus, PipelineState, RequestKind
