"""Best-effort IP geolocation.

Locators raise GeoLookupError on failure; ingestion turns any error into a
None country, which the fraud scorer treats as "no geo signal".
"""

import ipaddress
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from exceptions import GeoLookupError

logger = logging.getLogger(__name__)

IP_API_URL = "http://ip-api.com/json/{ip}?fields=countryCode"


class GeoLocator(ABC):
    @abstractmethod
    async def lookup_country(self, ip: str) -> Optional[str]:
        ...


class NullGeoLocator(GeoLocator):
    async def lookup_country(self, ip: str) -> Optional[str]:
        return None


def _is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_reserved or addr.is_link_local)


class IpApiGeoLocator(GeoLocator):
    """Country lookup against ip-api.com with a short timeout."""

    def __init__(self, timeout: float = 1.5, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url)

    async def lookup_country(self, ip: str) -> Optional[str]:
        # Private and malformed addresses have no country
        if not _is_public_ip(ip):
            return None

        try:
            response = await self._get(IP_API_URL.format(ip=ip))
        except httpx.HTTPError as e:
            raise GeoLookupError(f"Geo lookup failed: {type(e).__name__}") from e

        if response.status_code != 200:
            raise GeoLookupError(
                "Geo lookup returned an error status", detail={"status_code": response.status_code}
            )
        try:
            return response.json().get("countryCode") or None
        except ValueError as e:
            raise GeoLookupError("Geo lookup returned invalid JSON") from e
