"""Status snapshot served to web clients at /api/status."""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .item import Item
from .types import PipelineState


@dataclass
class StatusPayload(DataClassORJSONMixin):
    """Snapshot of the orchestrator and stream session."""

    state: PipelineState
    """Current pipeline state."""
    label: str
    """Display label for the pipeline state."""
    title: str | None = None
    """Stream session title."""
    artist: str | None = None
    """Stream session artist."""
    thumbnail_url: str | None = None
    error: str | None = None
    """Last user-visible error message, if the pipeline is in error."""
    stream_url: str | None = None
    """Shareable LAN URL of the audio stream."""
    port: int | None = None
    """Port the broadcast server is bound to."""
    listeners: int = 0
    """Number of connected stream listeners."""
    progress: float = 0.0
    """Download progress of the active item (0.0..1.0)."""
    current_index: int = 0
    queue: list[Item] = field(default_factory=list)
