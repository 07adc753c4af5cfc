"""Broadcast server: HTTP fan-out of the audio stream to many listeners."""

from .advertise import StreamAdvertiser
from .listener import StreamListener
from .server import (
    BroadcastServer,
    ListenerAddedEvent,
    ListenerRemovedEvent,
    ServerEvent,
    classify_request,
)
from .session import StreamSession, extract_stream_header, read_stream_header

__all__ = [
    "BroadcastServer",
    "ListenerAddedEvent",
    "ListenerRemovedEvent",
    "ServerEvent",
    "StreamAdvertiser",
    "StreamListener",
    "StreamSession",
    "classify_request",
    "extract_stream_header",
    "read_stream_header",
]
