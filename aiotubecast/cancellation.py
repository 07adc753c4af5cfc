"""Cancellation token shared between the event loop and worker threads."""

from __future__ import annotations

import threading


class PipelineCancelled(Exception):
    """Raised inside worker threads once their token was cancelled."""


class CancellationToken:
    """
    One-shot cancellation signal for a single pipeline run.

    The token is created on the event loop and observed from executor threads
    (yt-dlp progress hooks, the PyAV frame loop) as well as from the broadcast
    producer. Cancelling is irreversible; a new run gets a new token.
    """

    def __init__(self, name: str = "pipeline") -> None:
        """Create an uncancelled token."""
        self.name = name
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        """Whether cancel() was called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation to every observer."""
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise PipelineCancelled if the token was cancelled."""
        if self._event.is_set():
            raise PipelineCancelled(self.name)

    def __repr__(self) -> str:
        """Return a debug representation."""
        return f"<CancellationToken {self.name} cancelled={self.cancelled}>"
