"""In-memory cache of recently notified listings across providers."""

import time
from collections.abc import Callable

from immo_watch.logging import get_logger
from immo_watch.utils.address import parse_address
from immo_watch.utils.parsing import format_number

logger = get_logger(__name__)


def _entry_key(title: str | None, address: str | None, price: float | None) -> str | None:
    """Comparable key for a listing; None when there is nothing to compare on."""
    normalized_title = " ".join((title or "").lower().split())
    normalized_address = parse_address(address).normalized
    if not normalized_title and not normalized_address:
        return None
    price_part = format_number(round(price)) if price is not None else ""
    return f"{normalized_title}|{normalized_address}|{price_part}"


class SimilarityCache:
    """Remembers listings that were already notified, so the same listing
    posted on a second platform is not sent again.

    Entries expire after ``ttl_seconds``. Shared by all pipeline runs of a
    process; not persisted.
    """

    def __init__(
        self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def check_and_add_entry(
        self, title: str | None, address: str | None, price: float | None
    ) -> bool:
        """Return True when an equivalent listing was seen within the TTL.

        Listings that are not duplicates are registered; duplicates leave the
        cache unchanged.
        """
        key = _entry_key(title, address, price)
        if key is None:
            return False
        self._evict_expired()
        if key in self._entries:
            return True
        self._entries[key] = self._clock() + self._ttl
        return False

    def clear(self) -> None:
        self._entries.clear()
