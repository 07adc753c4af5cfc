"""Errors raised by aiotubecast components."""

from __future__ import annotations


class TubecastError(Exception):
    """Base class for all aiotubecast errors."""


class MetadataFetchFailed(TubecastError):
    """Resolving metadata for a single source failed."""

    def __init__(self, detail: str) -> None:
        """Store the collaborator's detail message."""
        super().__init__(f"Failed to fetch metadata: {detail}")
        self.detail = detail


class CollectionFetchFailed(TubecastError):
    """Resolving the entries of a collection (playlist) failed."""

    def __init__(self, detail: str) -> None:
        """Store the collaborator's detail message."""
        super().__init__(f"Failed to load playlist: {detail}")
        self.detail = detail


class ParseFailed(TubecastError):
    """Metadata was returned but could not be interpreted."""

    def __init__(self) -> None:
        """Use the fixed user-visible message."""
        super().__init__("Failed to parse video information")


class DownloadFailed(TubecastError):
    """Retrieving the source audio failed."""

    def __init__(self, detail: str | None = None) -> None:
        """Store an optional detail message."""
        super().__init__(f"Download failed: {detail}" if detail else "Download failed")
        self.detail = detail


class ConversionFailed(TubecastError):
    """Transcoding the retrieved audio failed."""

    def __init__(self, detail: str | None = None) -> None:
        """Store an optional detail message."""
        super().__init__(
            f"Audio conversion failed: {detail}" if detail else "Audio conversion failed"
        )
        self.detail = detail


class ServerBindFailed(TubecastError):
    """The broadcast server could not bind any port within its attempt budget."""

    def __init__(self, last_error: OSError | None, attempts: int) -> None:
        """Keep the error of the final bind attempt."""
        super().__init__(f"Could not bind after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts
