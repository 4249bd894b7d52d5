"""Chain heads and user-created links between listings.

Listings connected by ``previous_version_id`` or by a manual link form a
component of the version graph. Exactly one member of each component, the
most recent one, is left un-superseded: the chain head.
"""

from __future__ import annotations

import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from immo_watch.db.link_repo import canonical_pair
from immo_watch.errors import MigrationPendingError
from immo_watch.logging import get_logger
from immo_watch.models import EdgeKind, ManualLink, PriceHistoryEntry, StoredListing, now_ms
from immo_watch.versioning.detector import merge_price_history
from immo_watch.versioning.graph import VersionGraph

if TYPE_CHECKING:
    from immo_watch.db.storage import ListingStorage

logger = get_logger(__name__)

ERROR_IDS_REQUIRED = "Both listing IDs are required"
ERROR_SELF_LINK = "Cannot link a listing to itself"
ERROR_NOT_FOUND = "One or both listings not found"
ERROR_MIGRATION_PENDING = "Version tracking is unavailable until the database is migrated"


@dataclass(frozen=True)
class LinkResult:
    """Outcome of a user-facing link operation. Failures carry ``error``."""

    success: bool
    error: str | None = None
    link_id: str | None = None
    already_exists: bool = False
    removed: bool = False
    head_id: int | None = None

    @classmethod
    def failure(cls, error: str) -> LinkResult:
        return cls(success=False, error=error)


@dataclass(frozen=True)
class VersionHistoryEntry:
    """One listing of a version component, as shown in a timeline."""

    listing: StoredListing
    is_head: bool
    manually_linked: bool


async def load_version_graph(storage: ListingStorage, start_id: int) -> VersionGraph:
    """Load the component of ``start_id`` from storage, one BFS layer per query."""
    graph = VersionGraph()
    graph.add_node(start_id)
    visited: set[int] = set()
    frontier = {start_id}
    while frontier:
        visited |= frontier
        next_frontier: set[int] = set()
        for edge in await storage.get_version_edges(sorted(frontier)):
            graph.add_edge(edge)
            for end in (edge.source, edge.target):
                if end not in visited:
                    next_frontier.add(end)
        frontier = next_frontier
    return graph


def _pick_head(listings: Iterable[StoredListing]) -> StoredListing:
    """Most recent listing by publication (or insertion) date; ties go to the higher id."""
    return max(listings, key=lambda listing: (listing.effective_date, listing.id))


async def find_chain_head(storage: ListingStorage, listing_id: int) -> StoredListing | None:
    """The head of the component containing ``listing_id``, or None if it does not exist."""
    graph = await load_version_graph(storage, listing_id)
    members = await storage.get_listings(sorted(graph.component(listing_id)))
    if not members:
        return None
    return _pick_head(members.values())


class ManualLinkService:
    """Create and remove manual links while keeping one head per component.

    All operations return structured results instead of raising, since they
    are triggered directly by users.
    """

    def __init__(self, storage: ListingStorage) -> None:
        self._storage = storage

    async def _normalize_component(self, start_id: int) -> StoredListing | None:
        """Supersede every member of a component except its head.

        The head also collects the price observations of all members.
        """
        graph = await load_version_graph(self._storage, start_id)
        members = await self._storage.get_listings(sorted(graph.component(start_id)))
        if not members:
            return None
        head = _pick_head(members.values())

        others = [listing_id for listing_id in members if listing_id != head.id]
        await self._storage.set_superseded(others, superseded=True)
        await self._storage.set_superseded([head.id], superseded=False)

        observations: list[PriceHistoryEntry] = []
        for member in members.values():
            observations.extend(member.price_history)
            if member.price is not None:
                observations.append(
                    PriceHistoryEntry(date=member.effective_date, price=member.price)
                )
        change_set = merge_price_history(head.change_set, previous=observations)
        if change_set != head.change_set:
            await self._storage.update_change_set(head.id, change_set)

        logger.debug("component_normalized", head_id=head.id, size=len(members))
        return head

    @staticmethod
    def _validate_pair(listing_id1: int | None, listing_id2: int | None) -> LinkResult | None:
        if not listing_id1 or not listing_id2:
            return LinkResult.failure(ERROR_IDS_REQUIRED)
        if listing_id1 == listing_id2:
            return LinkResult.failure(ERROR_SELF_LINK)
        return None

    async def create_link(
        self, listing_id1: int | None, listing_id2: int | None, *, created_by: str | None = None
    ) -> LinkResult:
        """Link two listings as versions of the same property.

        The chronologically newer listing gets the older one as previous
        version if it has none yet. The combined component is then
        re-normalized so only its head stays un-superseded.
        """
        invalid = self._validate_pair(listing_id1, listing_id2)
        if invalid is not None:
            return invalid
        assert listing_id1 is not None and listing_id2 is not None

        try:
            async with self._storage.transaction():
                found = await self._storage.get_listings([listing_id1, listing_id2])
                if len(found) < 2:
                    return LinkResult.failure(ERROR_NOT_FOUND)

                existing = await self._storage.links.get_link(listing_id1, listing_id2)
                if existing is not None:
                    return LinkResult(success=True, link_id=existing.id, already_exists=True)

                low, high = canonical_pair(listing_id1, listing_id2)
                link = ManualLink(
                    id=secrets.token_hex(16),
                    listing_id_low=low,
                    listing_id_high=high,
                    created_by=created_by,
                    created_at=now_ms(),
                )
                await self._storage.links.insert_link(link)

                newer, older = sorted(
                    found.values(), key=lambda listing: (listing.effective_date, listing.id)
                )[::-1]
                if newer.previous_version_id is None and older.previous_version_id != newer.id:
                    await self._storage.set_previous_version(newer.id, older.id)

                head = await self._normalize_component(listing_id1)
        except MigrationPendingError:
            return LinkResult.failure(ERROR_MIGRATION_PENDING)

        logger.info(
            "manual_link_created",
            link_id=link.id,
            listing_ids=[low, high],
            head_id=head.id if head else None,
        )
        return LinkResult(success=True, link_id=link.id, head_id=head.id if head else None)

    async def remove_link(self, listing_id1: int | None, listing_id2: int | None) -> LinkResult:
        """Detach ``listing_id2`` from the component of ``listing_id1``.

        When the two are not linked directly, the manual link that connects
        ``listing_id2`` to the rest of the component is removed instead.
        Afterwards both resulting components get their own head.
        """
        invalid = self._validate_pair(listing_id1, listing_id2)
        if invalid is not None:
            return invalid
        assert listing_id1 is not None and listing_id2 is not None

        try:
            async with self._storage.transaction():
                found = await self._storage.get_listings([listing_id1, listing_id2])
                if len(found) < 2:
                    return LinkResult.failure(ERROR_NOT_FOUND)

                bridge = await self._remove_bridging_link(listing_id1, listing_id2)
                if bridge is None:
                    return LinkResult(success=True, removed=False)

                graph = await load_version_graph(self._storage, listing_id1)
                remaining = graph.component(listing_id1, blocked={listing_id2})
                detached = found[listing_id2]
                if detached.previous_version_id in remaining:
                    await self._storage.set_previous_version(detached.id, None)
                bridge_end = await self._storage.get_listing(bridge)
                if bridge_end is not None and bridge_end.previous_version_id == detached.id:
                    await self._storage.set_previous_version(bridge_end.id, None)

                await self._storage.set_superseded([detached.id], superseded=False)
                await self._normalize_component(listing_id2)
                await self._normalize_component(listing_id1)
        except MigrationPendingError:
            return LinkResult.failure(ERROR_MIGRATION_PENDING)

        logger.info("manual_link_removed", listing_id=listing_id2, detached_from=bridge)
        return LinkResult(success=True, removed=True)

    async def _remove_bridging_link(self, listing_id1: int, listing_id2: int) -> int | None:
        """Delete the link holding ``listing_id2`` in the component of ``listing_id1``.

        Returns:
            The listing on the other side of the removed link, or None.
        """
        if await self._storage.links.delete_link(listing_id1, listing_id2):
            return listing_id1

        graph = await load_version_graph(self._storage, listing_id1)
        chain = graph.component(listing_id1, blocked={listing_id2})
        for link in await self._storage.links.get_links_for(listing_id2):
            other = link.other_end(listing_id2)
            if other in chain:
                await self._storage.links.delete_link(listing_id2, other)
                logger.debug("bridging_link_removed", link_id=link.id, between=[listing_id2, other])
                return other
        return None

    async def remove_link_by_id(self, link_id: str) -> LinkResult:
        """Remove a manual link by its id and re-normalize both sides."""
        try:
            async with self._storage.transaction():
                link = await self._storage.links.delete_link_by_id(link_id)
                if link is None:
                    return LinkResult.failure("Link not found")
                await self._normalize_component(link.listing_id_low)
                await self._normalize_component(link.listing_id_high)
        except MigrationPendingError:
            return LinkResult.failure(ERROR_MIGRATION_PENDING)
        return LinkResult(success=True, removed=True, link_id=link_id)

    async def break_version_chain(self, listing_id: int) -> LinkResult:
        """Cut a listing loose from its automatic previous version."""
        try:
            async with self._storage.transaction():
                listing = await self._storage.get_listing(listing_id)
                if listing is None:
                    return LinkResult.failure("Listing not found")
                previous_id = listing.previous_version_id
                if previous_id is None:
                    return LinkResult(success=True, removed=False)
                await self._storage.set_previous_version(listing_id, None)
                head = await self._normalize_component(listing_id)
                await self._normalize_component(previous_id)
        except MigrationPendingError:
            return LinkResult.failure(ERROR_MIGRATION_PENDING)
        logger.info("version_chain_broken", listing_id=listing_id, previous_id=previous_id)
        return LinkResult(success=True, removed=True, head_id=head.id if head else None)

    async def get_manual_links(self, listing_id: int) -> list[ManualLink]:
        return await self._storage.links.get_links_for(listing_id)

    async def get_linked_listing_ids(self, listing_id: int) -> list[int]:
        """Listings directly linked to ``listing_id`` by a user."""
        links = await self._storage.links.get_links_for(listing_id)
        return [link.other_end(listing_id) for link in links]

    async def are_listings_linked(self, listing_id1: int, listing_id2: int) -> bool:
        return await self._storage.links.get_link(listing_id1, listing_id2) is not None

    async def get_version_history(self, listing_id: int) -> list[VersionHistoryEntry]:
        """Every listing in the component of ``listing_id``, newest first."""
        graph = await load_version_graph(self._storage, listing_id)
        members = await self._storage.get_listings(sorted(graph.component(listing_id)))
        if not members:
            return []
        head = _pick_head(members.values())
        ordered = sorted(
            members.values(), key=lambda listing: (listing.effective_date, listing.id), reverse=True
        )
        return [
            VersionHistoryEntry(
                listing=listing,
                is_head=listing.id == head.id,
                manually_linked=any(
                    EdgeKind.MANUAL in graph.edge_kinds(listing.id, neighbor)
                    for neighbor in graph.neighbors(listing.id)
                ),
            )
            for listing in ordered
        ]
