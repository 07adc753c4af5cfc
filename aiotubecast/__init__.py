"""Fetch, convert and re-broadcast online audio to many HTTP listeners."""

__all__ = [
    "BroadcastServer",
    "CancellationToken",
    "HistoryStore",
    "PlaybackQueue",
    "StreamOrchestrator",
    "StreamerConfig",
]

from .cancellation import CancellationToken
from .config import StreamerConfig
from .history import HistoryStore
from .pipeline import PlaybackQueue, StreamOrchestrator
from .server import BroadcastServer
