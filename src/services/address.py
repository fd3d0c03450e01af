"""
Mesh Router Agent - Public Address Discovery

Tries STUN first, then a list of plain-text "what is my IP" services.
"""
import ipaddress
import logging
from typing import Optional, Sequence

import aiohttp

from errors import DiscoveryExhausted, StunError
from services.stun import stun_lookup

logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVER = ("stun.l.google.com", 19302)

DEFAULT_HTTP_SERVICES = [
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
]


def is_valid_ip(value: str) -> bool:
    """Check for an IPv4 or IPv6 literal."""
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


class AddressResolver:
    """Discovers the agent's public address."""

    def __init__(
        self,
        stun_server: Optional[tuple[str, int]] = DEFAULT_STUN_SERVER,
        fallback_services: Sequence[str] = tuple(DEFAULT_HTTP_SERVICES),
        timeout: float = 10.0,
        override: Optional[str] = None,
    ):
        self.stun_server = stun_server
        self.fallback_services = list(fallback_services)
        self.timeout = timeout
        self.override = override or None

    async def discover_address(self) -> str:
        """Return the current public address.

        Raises:
            DiscoveryExhausted: if STUN and every HTTP service failed
        """
        if self.override:
            return self.override

        if self.stun_server:
            host, port = self.stun_server
            try:
                address = await stun_lookup(host, port, timeout=self.timeout)
                if is_valid_ip(address):
                    logger.debug(f"Detected public IP: {address} (via STUN)")
                    return address
            except StunError as e:
                logger.info(f"STUN detection failed ({e}), falling back to HTTP services...")

        for service in self.fallback_services:
            address = await self._query_http(service)
            if address:
                logger.debug(f"Detected public IP: {address} (via HTTP {service})")
                return address

        raise DiscoveryExhausted("Failed to detect public IP from all STUN and HTTP services")

    async def _query_http(self, service: str) -> Optional[str]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(service) as resp:
                    if resp.status != 200:
                        logger.debug(f"{service} returned HTTP {resp.status}")
                        return None
                    text = (await resp.text()).strip()
        except Exception as e:
            logger.debug(f"{service} failed: {e!r}")
            return None

        if not is_valid_ip(text):
            logger.debug(f"{service} returned a non-address body: {text[:64]!r}")
            return None
        return text
