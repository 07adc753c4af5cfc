"""Utility functions for aiotubecast."""

from __future__ import annotations

import socket

STREAM_PATH = "/stream.mp3"


def get_local_ip() -> str | None:
    """Get the LAN address other devices can use to reach this host.

    Returns the IP address of the interface that would be used to connect
    to an external address, or None if no network is available.
    """
    try:
        # Connecting a UDP socket sends nothing, it only selects the interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            result: str = s.getsockname()[0]
            return result
    except OSError:
        return None


def build_stream_url(address: str | None, port: int, path: str = STREAM_PATH) -> str | None:
    """Build the human-shareable stream URL, None if no address is known."""
    if not address:
        return None
    if ":" in address:
        address = f"[{address}]"
    return f"http://{address}:{port}{path}"
