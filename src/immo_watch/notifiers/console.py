"""Notification adapter that prints listings to stdout (dry runs)."""

from collections.abc import Sequence

from immo_watch.models import JobConfig, Listing
from immo_watch.notifiers.base import NotificationAdapter, format_listing_facts


class ConsoleNotifier(NotificationAdapter):
    name = "console"

    async def send(self, provider: str, listings: Sequence[Listing], job: JobConfig) -> None:
        print(f"[{job.name or job.id}] {len(listings)} new listing(s) from {provider}")
        for listing in listings:
            print(f"  - {listing.title or 'Untitled'}")
            print(f"    {format_listing_facts(listing)}")
            if listing.address:
                print(f"    {listing.address}")
            if listing.link:
                print(f"    {listing.link}")
