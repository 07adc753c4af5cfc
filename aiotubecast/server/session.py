"""Stream session state shared by all listeners of the broadcast server."""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from pathlib import Path

# ID3v2 header: "ID3" + version(2) + flags(1) + syncsafe size(4) = 10 bytes
ID3_HEADER_FORMAT = ">3s2sB4s"
ID3_HEADER_SIZE = struct.calcsize(ID3_HEADER_FORMAT)
_ID3_FOOTER_FLAG = 0x10


@dataclass(frozen=True)
class StreamSession:
    """
    What is currently playing.

    Holds the display metadata rendered into the player page and the cached
    header block replayed to listeners that join in the middle of a track.
    """

    title: str | None = None
    artist: str | None = None
    thumbnail_url: str | None = None
    header: bytes | None = None
    """Framing bytes (the leading ID3v2 tag) of the current track."""

    def with_metadata(
        self, *, title: str | None, artist: str | None, thumbnail_url: str | None
    ) -> StreamSession:
        """Return a copy with new display metadata."""
        return replace(self, title=title, artist=artist, thumbnail_url=thumbnail_url)

    def with_header(self, header: bytes | None) -> StreamSession:
        """Return a copy with a new cached header."""
        return replace(self, header=header or None)


def _syncsafe_to_int(data: bytes) -> int:
    """Decode a 4 byte syncsafe integer (7 significant bits per byte)."""
    value = 0
    for byte in data:
        value = (value << 7) | (byte & 0x7F)
    return value


def id3_tag_length(data: bytes) -> int | None:
    """
    Return the total length of the ID3v2 tag at the start of data.

    Returns None if data does not start with a complete ID3v2 header.
    """
    if len(data) < ID3_HEADER_SIZE:
        return None
    magic, _version, flags, size = struct.unpack(ID3_HEADER_FORMAT, data[:ID3_HEADER_SIZE])
    if magic != b"ID3" or any(byte & 0x80 for byte in size):
        return None
    length = ID3_HEADER_SIZE + _syncsafe_to_int(size)
    if flags & _ID3_FOOTER_FLAG:
        length += ID3_HEADER_SIZE
    return length


def extract_stream_header(data: bytes) -> bytes | None:
    """Return the leading ID3v2 tag of an MP3 byte block, if fully contained."""
    length = id3_tag_length(data)
    if length is None or length > len(data):
        return None
    return data[:length]


def read_stream_header(path: Path) -> bytes | None:
    """
    Read the leading ID3v2 tag of an MP3 file.

    NOTE: This function does blocking file I/O.
    """
    with path.open("rb") as file:
        head = file.read(ID3_HEADER_SIZE)
        length = id3_tag_length(head)
        if length is None:
            return None
        return extract_stream_header(head + file.read(length - len(head)))
