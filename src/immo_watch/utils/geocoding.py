"""Address geocoding via a Nominatim-compatible API."""

from typing import Final

import httpx
from pydantic import ValidationError

from immo_watch.logging import get_logger
from immo_watch.models import Coordinates

logger = get_logger(__name__)

_TIMEOUT: Final = 10.0


class NominatimGeocoder:
    """Forward geocoding with an in-process cache.

    Failed lookups are cached as None too, so an address the service cannot
    resolve is only asked for once per process.
    """

    def __init__(
        self,
        base_url: str,
        user_agent: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = _TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._cache: dict[str, Coordinates | None] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, headers={"User-Agent": self._user_agent}
            )
        return self._client

    async def geocode(self, address: str) -> Coordinates | None:
        """Return coordinates for an address, or None if it cannot be resolved.

        Never raises on HTTP or data errors; those are logged and give None.
        """
        key = " ".join(address.lower().split())
        if not key:
            return None
        if key in self._cache:
            return self._cache[key]

        coords = await self._lookup(address)
        self._cache[key] = coords
        return coords

    async def _lookup(self, address: str) -> Coordinates | None:
        client = await self._get_client()
        try:
            resp = await client.get(
                f"{self._base_url}/search",
                params={"q": address, "format": "json", "limit": "1"},
                headers={"User-Agent": self._user_agent},
            )
            if resp.status_code != 200:
                logger.debug("geocode_http_status", address=address, status=resp.status_code)
                return None
            results = resp.json()
            if not results:
                return None
            first = results[0]
            return Coordinates(lat=float(first["lat"]), lng=float(first["lon"]))
        except httpx.HTTPError:
            logger.warning("geocode_failed", address=address, exc_info=True)
            return None
        except (ValueError, KeyError, TypeError, IndexError, ValidationError):
            logger.warning("geocode_bad_response", address=address, exc_info=True)
            return None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
