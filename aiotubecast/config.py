"""Runtime configuration for the streamer."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_MAX_BIND_ATTEMPTS = 10
# 64 KiB blocks with a 10 ms pause in between
DEFAULT_CHUNK_SIZE = 65536
DEFAULT_CHUNK_INTERVAL = 0.01
DEFAULT_BUFFER_WINDOW = 2.0


def _default_work_dir() -> Path:
    return Path(tempfile.gettempdir()) / "aiotubecast"


@dataclass(frozen=True)
class StreamerConfig:
    """Tunables shared by the orchestrator and the broadcast server."""

    host: str = DEFAULT_HOST
    """Interface the broadcast server listens on."""
    port: int = DEFAULT_PORT
    """Preferred port; the server retries upward on bind conflicts."""
    max_bind_attempts: int = DEFAULT_MAX_BIND_ATTEMPTS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    """Bytes read from the artifact per broadcast call."""
    chunk_interval: float = DEFAULT_CHUNK_INTERVAL
    """Seconds to sleep between broadcast chunks."""
    buffer_window: float = DEFAULT_BUFFER_WINDOW
    """Seconds to wait after a track is fully broadcast before advancing."""
    work_dir: Path = field(default_factory=_default_work_dir)
    """Directory for downloads and converted artifacts."""
    history_path: Path | None = None
    """JSON file for played-item history, None disables history."""
    advertise_mdns: bool = False
    """Register the stream via mDNS once the server is bound."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in range 0..65535, got {self.port}")
        if self.max_bind_attempts <= 0:
            raise ValueError(f"max_bind_attempts must be positive, got {self.max_bind_attempts}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_interval < 0:
            raise ValueError(f"chunk_interval must not be negative, got {self.chunk_interval}")
        if self.buffer_window < 0:
            raise ValueError(f"buffer_window must not be negative, got {self.buffer_window}")
