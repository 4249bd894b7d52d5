"""Database storage for listings and version links."""

from immo_watch.db.link_repo import ManualLinkRepository
from immo_watch.db.storage import ListingStorage

__all__ = ["ListingStorage", "ManualLinkRepository"]
