"""Base provider interface."""

import asyncio
import hashlib
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from immo_watch.logging import get_logger
from immo_watch.models import DetailPatch, Listing

logger = get_logger(__name__)

RawListing = dict[str, Any]


@dataclass(frozen=True)
class FetchOptions:
    """Per-job settings a provider needs while fetching and filtering."""

    blacklist: tuple[str, ...] = ()
    full_fetch: bool = False


def build_request_url(url: str, sort_param: str | None) -> str:
    """Append a sort fragment such as ``sorting=-firstactivation`` to a search URL.

    The URL is returned unchanged when it already carries the fragment.
    """
    if not sort_param:
        return url
    parts = urlsplit(url)
    existing = [p for p in parts.query.split("&") if p]
    if sort_param in existing:
        return url
    query = "&".join([*existing, sort_param])
    return urlunsplit(parts._replace(query=query))


def listing_hash(*values: object) -> str:
    """Stable content hash of a provider listing, usually built from its id and price."""
    joined = ",".join("" if v is None else str(v) for v in values)
    return hashlib.sha256(joined.encode()).hexdigest()[:16]


def is_one_of(text: str | None, terms: Iterable[str]) -> bool:
    """Case-insensitive check whether any term occurs in ``text``."""
    if not text:
        return False
    lowered = text.lower()
    return any(term.lower() in lowered for term in terms if term)


class BaseProvider(ABC):
    """Abstract base class for listing providers."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Identifier of the source platform, stored on every listing."""
        ...

    @property
    def enabled(self) -> bool:
        return True

    @property
    def sort_param(self) -> str | None:
        """Query fragment that sorts results newest first, if the platform has one."""
        return None

    @property
    def required_fields(self) -> tuple[str, ...]:
        return ("title", "price", "link")

    @abstractmethod
    async def fetch(
        self, url: str, known_hashes: set[str], options: FetchOptions
    ) -> list[RawListing]:
        """Fetch raw listings from the platform.

        Args:
            url: Search URL, with the sort parameter already applied.
            known_hashes: Hashes already stored for this job; enables early-stop
                pagination unless ``options.full_fetch`` is set.
            options: Blacklist and fetch mode of the job.

        Returns:
            Raw, provider-specific listing mappings.

        Raises:
            ProviderError: If the platform cannot be reached or answers garbage.
        """
        ...

    @abstractmethod
    def normalize(self, raw: RawListing) -> Listing | None:
        """Turn a raw listing into a Listing; None drops the item."""
        ...

    def filter(self, listing: Listing, options: FetchOptions) -> bool:
        """Whether a listing survives the job's blacklist."""
        if not options.blacklist:
            return True
        return not (
            is_one_of(listing.title, options.blacklist)
            or is_one_of(listing.description, options.blacklist)
        )

    async def get_details(self, provider_listing_id: str) -> DetailPatch | None:
        """Fetch extra fields for one listing. Providers without a detail source return None."""
        return None

    def raw_hash(self, raw: RawListing) -> str | None:
        """Hash a raw item would get after normalization, used for early stopping."""
        return None

    async def _paginate(
        self,
        fetch_page: Callable[[int], Awaitable[list[RawListing]]],
        *,
        max_pages: int,
        known_hashes: set[str],
        options: FetchOptions,
        page_delay: Callable[[], Awaitable[None]] | None = None,
    ) -> list[RawListing]:
        """Generic pagination loop shared by all providers.

        Args:
            fetch_page: Async callable receiving the 1-based page number,
                returns raw items for that page (empty list signals the end).
            max_pages: Maximum number of pages to fetch.
            known_hashes: Hashes already in the DB; a page holding only known
                items stops pagination unless ``options.full_fetch`` is set.
            options: Fetch options of the job.
            page_delay: Optional async callable invoked between pages.

        Returns:
            Raw items of all fetched pages, in page order.
        """
        items: list[RawListing] = []
        early_stop = not options.full_fetch and bool(known_hashes)

        for page in range(1, max_pages + 1):
            page_items = await fetch_page(page)
            if not page_items:
                break

            items.extend(page_items)

            if early_stop:
                hashes = [self.raw_hash(item) for item in page_items]
                if all(h is not None and h in known_hashes for h in hashes):
                    logger.info("early_stop_all_known", provider=self.id, page=page)
                    break

            # Delay between pages (not after last page)
            if page_delay is not None and page < max_pages:
                await page_delay()

        return items

    async def page_delay(self) -> None:
        """Delay between result pages. Override for provider-specific pacing."""
        await asyncio.sleep(random.uniform(1.0, 2.0))

    async def close(self) -> None:  # noqa: B027
        """Clean up provider resources (e.g. HTTP clients)."""
