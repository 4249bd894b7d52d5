"""Provider for listing platforms that expose a JSON search endpoint."""

import asyncio
import random
from datetime import datetime
from typing import Any, Final

import httpx
from pydantic import ValidationError

from immo_watch.errors import ProviderError
from immo_watch.logging import get_logger
from immo_watch.models import DetailPatch, Listing, ProviderConfig
from immo_watch.providers.base import BaseProvider, FetchOptions, RawListing, listing_hash

logger = get_logger(__name__)

_DEFAULT_TIMEOUT: Final = 30.0

# Listing fields read from a raw item; each defaults to a top-level key of the same name
_LISTING_KEYS: Final = (
    "title",
    "address",
    "price",
    "size",
    "rooms",
    "latitude",
    "longitude",
    "link",
    "image",
    "description",
    "published_at",
)

_DETAIL_KEYS: Final = (
    "description",
    "rooms",
    "floor",
    "energy_efficiency_class",
    "heating_type",
    "construction_year",
    "published_at",
    "additional_images",
    "documents",
)


def resolve_path(data: Any, path: str | None) -> Any:
    """Follow a dotted path ("result.items", "address.line") through nested dicts.

    Numeric segments index into lists. Returns None when any step is missing.
    """
    if not path:
        return data
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def parse_timestamp(value: Any) -> int | None:
    """Epoch milliseconds from a number or an ISO 8601 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        # Values below 1e11 are epoch seconds
        return int(value * 1000) if value < 1e11 else int(value)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value).timestamp() * 1000)
        except ValueError:
            return None
    return None


class JsonApiProvider(BaseProvider):
    """Fetch listings from a paginated JSON API described by a ProviderConfig.

    ``field_map`` maps listing fields to dotted paths in a raw item; unmapped
    fields are read from the key of the same name.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        page_delay_range: tuple[float, float] = (1.0, 2.0),
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._page_delay_range = page_delay_range

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def sort_param(self) -> str | None:
        return self._config.sort_param

    @property
    def required_fields(self) -> tuple[str, ...]:
        return self._config.required_fields

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    def _field(self, raw: RawListing, name: str) -> Any:
        return resolve_path(raw, self._config.field_map.get(name, name))

    def raw_hash(self, raw: RawListing) -> str | None:
        item_id = self._field(raw, self._config.id_field)
        if item_id is None:
            return None
        return listing_hash(item_id, self._field(raw, "price"))

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        client = await self._get_client()
        # keep the query parameters already on the search URL
        request_url = httpx.URL(url).copy_merge_params(params) if params else url
        try:
            response = await client.get(request_url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ProviderError(self.id, f"request to {url} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(self.id, f"invalid JSON from {url}") from e

    async def fetch(
        self, url: str, known_hashes: set[str], options: FetchOptions
    ) -> list[RawListing]:
        async def fetch_page(page: int) -> list[RawListing]:
            body = await self._get_json(url, params={self._config.page_param: page})
            items = resolve_path(body, self._config.items_path)
            if items is None:
                return []
            if not isinstance(items, list):
                raise ProviderError(
                    self.id, f"expected a list at '{self._config.items_path}', got {type(items)}"
                )
            page_items = [item for item in items if isinstance(item, dict)]
            logger.debug("page_fetched", provider=self.id, page=page, items=len(page_items))
            return page_items

        return await self._paginate(
            fetch_page,
            max_pages=self._config.max_pages,
            known_hashes=known_hashes,
            options=options,
            page_delay=self.page_delay,
        )

    async def page_delay(self) -> None:
        low, high = self._page_delay_range
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high))

    def normalize(self, raw: RawListing) -> Listing | None:
        item_id = self._field(raw, self._config.id_field)
        if item_id is None:
            logger.debug("item_without_id", provider=self.id)
            return None

        data: dict[str, Any] = {name: self._field(raw, name) for name in _LISTING_KEYS}
        data["published_at"] = parse_timestamp(data["published_at"])
        for key in ("title", "address", "link", "image", "description"):
            if data[key] is not None:
                data[key] = str(data[key]).strip()
        if data["latitude"] is None or data["longitude"] is None:
            data["latitude"] = data["longitude"] = None

        try:
            return Listing(
                hash=listing_hash(item_id, self._field(raw, "price")),
                provider=self.id,
                provider_listing_id=str(item_id),
                **data,
            )
        except ValidationError as e:
            logger.debug("item_invalid", provider=self.id, item_id=item_id, error=str(e))
            return None

    async def get_details(self, provider_listing_id: str) -> DetailPatch | None:
        if not self._config.detail_url:
            return None
        url = self._config.detail_url.format(id=provider_listing_id)
        body = await self._get_json(url)
        if not isinstance(body, dict):
            raise ProviderError(self.id, f"unexpected detail response for {provider_listing_id}")

        data = {name: self._field(body, name) for name in _DETAIL_KEYS}
        data["published_at"] = parse_timestamp(data["published_at"])
        for key in ("additional_images", "documents"):
            value = data[key]
            data[key] = tuple(str(v) for v in value) if isinstance(value, list) else ()
        try:
            return DetailPatch.model_validate(data)
        except ValidationError as e:
            raise ProviderError(
                self.id, f"invalid detail data for {provider_listing_id}: {e}"
            ) from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
