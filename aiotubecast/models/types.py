"""Models for enum types used by aiotubecast."""

from enum import Enum


class ItemStatus(Enum):
    """Lifecycle status of a queued item, in normal progression order."""

    QUEUED = "queued"
    """Waiting in the queue."""
    DOWNLOADING = "downloading"
    """Source audio is being retrieved."""
    CONVERTING = "converting"
    """Retrieved audio is being transcoded to MP3."""
    READY = "ready"
    """A playable MP3 artifact exists on disk."""
    PLAYING = "playing"
    """The artifact is being broadcast to listeners."""
    FAILED = "failed"
    """Terminal: download or conversion failed."""


ACTIVE_ITEM_STATUSES = frozenset(
    {ItemStatus.DOWNLOADING, ItemStatus.CONVERTING, ItemStatus.PLAYING}
)
"""Statuses held by at most one item at a time."""


class PipelineState(Enum):
    """State of the stream orchestrator pipeline."""

    IDLE = "idle"
    FETCHING_METADATA = "fetching_metadata"
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    SERVING = "serving"
    ERROR = "error"

    @property
    def label(self) -> str:
        """Human readable label for status displays."""
        return _PIPELINE_STATE_LABELS[self]


_PIPELINE_STATE_LABELS = {
    PipelineState.IDLE: "Ready",
    PipelineState.FETCHING_METADATA: "Fetching info...",
    PipelineState.DOWNLOADING: "Downloading...",
    PipelineState.CONVERTING: "Converting...",
    PipelineState.SERVING: "Streaming",
    PipelineState.ERROR: "Error",
}


class RequestKind(Enum):
    """Classification of an incoming HTTP request."""

    STREAM = "stream"
    """Continuous audio stream."""
    PAGE = "page"
    """HTML player page."""
    SKIP = "skip"
    STOP = "stop"
    PREVIOUS = "previous"
    STATUS = "status"
    """JSON status snapshot."""
    NOT_FOUND = "not_found"
