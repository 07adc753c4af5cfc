"""mDNS advertising of the audio stream."""

from __future__ import annotations

import logging

from zeroconf import IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiotubecast.util import STREAM_PATH

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_http._tcp.local."


class StreamAdvertiser:
    """Registers the stream endpoint as an HTTP service via mDNS."""

    _zc: AsyncZeroconf | None
    _mdns_service: AsyncServiceInfo | None

    def __init__(self, name: str = "aiotubecast") -> None:
        """
        Initialize the advertiser.

        Args:
            name: Instance name announced in the local network.
        """
        self._name = name
        self._zc = None
        self._mdns_service = None

    async def start(self, address: str, port: int, path: str = STREAM_PATH) -> None:
        """Advertise the stream served at address:port."""
        await self.stop()
        self._zc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        info = AsyncServiceInfo(
            type_=SERVICE_TYPE,
            name=f"{self._name}.{SERVICE_TYPE}",
            server=f"{self._name}.local.",
            parsed_addresses=[address],
            port=port,
            properties={"path": path},
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.info("mDNS advertising stream on %s:%d%s", address, port, path)
        except NonUniqueNameException:
            logger.error(
                "A stream named %s is already advertised in the local network!", self._name
            )

    async def stop(self) -> None:
        """Stop mDNS advertising."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
