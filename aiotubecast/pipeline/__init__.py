"""Playback queue and the orchestrator driving it."""

from .orchestrator import (
    ItemUpdatedEvent,
    OrchestratorEvent,
    PipelineErrorEvent,
    StateChangedEvent,
    StreamOrchestrator,
)
from .queue import PlaybackQueue

__all__ = [
    "ItemUpdatedEvent",
    "OrchestratorEvent",
    "PipelineErrorEvent",
    "PlaybackQueue",
    "StateChangedEvent",
    "StreamOrchestrator",
]
