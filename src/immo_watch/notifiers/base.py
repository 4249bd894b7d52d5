"""Notification adapter interface and fan-out dispatcher."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence

from immo_watch.logging import get_logger
from immo_watch.models import JobConfig, Listing
from immo_watch.utils.parsing import format_number

logger = get_logger(__name__)


def format_price(price: float | None) -> str:
    """German price display, e.g. ``1.250 €``."""
    if price is None:
        return "Price on request"
    return f"{price:,.0f} €".replace(",", ".")


def format_listing_facts(listing: Listing) -> str:
    """One line of key facts: price, size and rooms."""
    parts = [format_price(listing.price)]
    if listing.size is not None:
        parts.append(f"{format_number(listing.size)} m²")
    if listing.rooms is not None:
        parts.append(f"{format_number(listing.rooms)} rooms")
    return " | ".join(parts)


class NotificationAdapter(ABC):
    """One notification channel."""

    name: str = "adapter"

    @abstractmethod
    async def send(self, provider: str, listings: Sequence[Listing], job: JobConfig) -> None:
        """Deliver new listings of one provider run. May raise on delivery failure."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release channel resources."""


class NotificationDispatcher:
    """Send to every adapter concurrently; one failing channel never blocks the others."""

    def __init__(self, adapters: Sequence[NotificationAdapter]) -> None:
        self._adapters = list(adapters)

    async def send(self, provider: str, listings: Sequence[Listing], job: JobConfig) -> int:
        """Notify all adapters.

        Returns:
            Number of adapters that delivered without error.
        """
        if not listings or not self._adapters:
            return 0
        results = await asyncio.gather(
            *(adapter.send(provider, listings, job) for adapter in self._adapters),
            return_exceptions=True,
        )
        delivered = 0
        for adapter, result in zip(self._adapters, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "notification_failed",
                    adapter=adapter.name,
                    job_id=job.id,
                    provider=provider,
                    error=str(result),
                )
            else:
                delivered += 1
        return delivered

    async def close(self) -> None:
        for adapter in self._adapters:
            await adapter.close()
