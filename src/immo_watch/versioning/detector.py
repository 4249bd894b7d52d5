"""Version detection: link re-published listings to their earlier versions.

Detection runs before persistence, when batch listings have no ids yet. Links
between batch members are kept as ``PendingVersionLink`` values keyed by hash
and resolved to real ids once the batch is stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from itertools import pairwise
from typing import TYPE_CHECKING, Any

from immo_watch.errors import MigrationPendingError
from immo_watch.logging import get_logger
from immo_watch.models import Listing, PriceHistoryEntry, StoredListing, now_ms
from immo_watch.versioning.identity import (
    compute_fuzzy_identity,
    compute_property_identity,
    could_be_same_property,
    group_by_fuzzy_identity,
)

if TYPE_CHECKING:
    from immo_watch.db.storage import ListingStorage

logger = get_logger(__name__)


@dataclass(frozen=True)
class PendingVersionLink:
    """Version edge between two listings of the same batch, by hash."""

    source_hash: str  # the newer listing
    target_hash: str  # its previous version


@dataclass
class VersionPlan:
    """Outcome of batch version detection, applied after the batch is persisted."""

    listings: list[Listing]
    pending_links: list[PendingVersionLink] = field(default_factory=list)
    superseded_ids: set[int] = field(default_factory=set)
    migration_pending: bool = False

    def stale_group_hashes(self) -> list[str]:
        """Hashes of fuzzy-group members that are not the newest of their group.

        The newest member is the one no other member points to as its previous
        version; if every member is referenced (a cycle), the last one wins.
        """
        predecessors = {link.target_hash for link in self.pending_links}
        stale: list[str] = []
        for members in group_by_fuzzy_identity(self.listings).values():
            if len(members) < 2:
                continue
            newest = next((m for m in members if m.hash not in predecessors), members[-1])
            stale.extend(m.hash for m in members if m.hash != newest.hash)
        return stale


def _history_entries(change_set: dict[str, Any]) -> list[PriceHistoryEntry]:
    entries = []
    for raw in change_set.get("priceHistory") or []:
        if isinstance(raw, dict) and raw.get("date") is not None and raw.get("price") is not None:
            entries.append(PriceHistoryEntry(date=raw["date"], price=raw["price"]))
    return entries


def merge_price_history(
    change_set: dict[str, Any],
    *,
    previous: Iterable[PriceHistoryEntry] = (),
    current: PriceHistoryEntry | None = None,
) -> dict[str, Any]:
    """Return a copy of ``change_set`` with an updated ``priceHistory``.

    Args:
        change_set: Existing change set, possibly holding a price history.
        previous: Earlier observations; each is added only if its date is new.
        current: The latest observation; replaces an entry on the same date.

    Returns:
        New change set whose history has one entry per date, oldest first.
    """
    by_date: dict[int, float] = {e.date: e.price for e in _history_entries(change_set)}
    for entry in previous:
        by_date.setdefault(entry.date, entry.price)
    if current is not None:
        by_date[current.date] = current.price
    history = [{"date": date, "price": price} for date, price in sorted(by_date.items())]
    return {**change_set, "priceHistory": history}


def _observations(listing: Listing, date: int) -> list[PriceHistoryEntry]:
    """A listing's own history plus its price at ``date``."""
    entries = _history_entries(listing.change_set)
    if listing.price is not None:
        entries.append(PriceHistoryEntry(date=date, price=listing.price))
    return entries


def _with_predecessor_history(
    successor: Listing, predecessor: Listing, predecessor_date: int, now: int
) -> Listing:
    current = (
        PriceHistoryEntry(date=now, price=successor.price) if successor.price is not None else None
    )
    change_set = merge_price_history(
        successor.change_set,
        previous=_observations(predecessor, predecessor_date),
        current=current,
    )
    return successor.model_copy(update={"change_set": change_set})


def _link_to_stored(listing: Listing, existing: StoredListing, now: int) -> Listing:
    linked = _with_predecessor_history(listing, existing, existing.created_at, now)
    return linked.model_copy(update={"previous_version_id": existing.id})


async def detect_version(
    listing: Listing, job_id: str, storage: ListingStorage, *, now: int | None = None
) -> Listing:
    """Link a listing to a stored listing with the same strict identity.

    A link is only made when price or size changed; an unchanged re-listing
    keeps its identity but no previous version.

    Returns:
        Copy of the listing with ``property_identity`` and, when linked,
        ``previous_version_id`` and a merged price history.
    """
    identity = compute_property_identity(listing)
    if identity is None:
        return listing
    listing = listing.model_copy(update={"property_identity": identity})

    try:
        existing = await storage.find_by_property_identity(
            job_id, identity, exclude_hash=listing.hash
        )
    except MigrationPendingError:
        logger.debug("version_detection_skipped", reason="migration_pending", job_id=job_id)
        return listing

    if existing is None:
        return listing
    if listing.price == existing.price and listing.size == existing.size:
        return listing

    logger.debug(
        "version_detected",
        address=listing.address,
        previous_id=existing.id,
        old_price=existing.price,
        new_price=listing.price,
    )
    return _link_to_stored(listing, existing, now if now is not None else now_ms())


async def detect_versions_with_batch_awareness(
    listings: list[Listing], job_id: str, storage: ListingStorage, *, now: int | None = None
) -> VersionPlan:
    """Detect versions within a batch and against stored listings.

    Listings sharing a fuzzy identity form a group. Each group is ordered newest
    first by ``published_at`` (unknown counts as oldest) and chained; the
    oldest member links to the newest stored listing with the same fuzzy
    identity when the two pass ``could_be_same_property``, and otherwise tries the
    strict ``detect_version`` path. Listings without a fuzzy identity only go
    through the strict path.

    Args:
        listings: New, not yet persisted listings of one run.
        job_id: Job the listings belong to.
        storage: Store to look up earlier versions in.
        now: Timestamp for new price history entries (epoch ms).

    Returns:
        VersionPlan with updated listings, pending in-batch links and stored
        listings to supersede.
    """
    now = now if now is not None else now_ms()

    by_hash: dict[str, Listing] = {}
    for listing in listings:
        if listing.hash in by_hash:
            continue
        by_hash[listing.hash] = listing.model_copy(
            update={
                "fuzzy_identity": compute_fuzzy_identity(listing),
                "property_identity": compute_property_identity(listing),
            }
        )
    order = list(by_hash)
    groups = group_by_fuzzy_identity(by_hash.values())

    plan = VersionPlan(listings=[])
    if groups:
        try:
            existing_by_identity = await storage.find_by_fuzzy_identities(job_id, list(groups))
        except MigrationPendingError:
            logger.debug("version_detection_skipped", reason="migration_pending", job_id=job_id)
            return VersionPlan(listings=[by_hash[h] for h in order], migration_pending=True)
    else:
        existing_by_identity = {}

    for identity, members in groups.items():
        ordered = sorted(
            members,
            key=lambda m: m.published_at if m.published_at is not None else 0,
            reverse=True,
        )

        oldest = by_hash[ordered[-1].hash]
        existing = existing_by_identity.get(identity)
        linked = False
        if existing is not None and existing.hash != oldest.hash:
            if could_be_same_property(oldest, existing):
                linked = True
                by_hash[oldest.hash] = _link_to_stored(oldest, existing, now)
                plan.superseded_ids.add(existing.id)
                logger.debug(
                    "relisting_detected",
                    hash=oldest.hash,
                    previous_id=existing.id,
                    fuzzy_identity=identity,
                )
            else:
                logger.debug(
                    "fuzzy_match_rejected",
                    hash=oldest.hash,
                    candidate_id=existing.id,
                    fuzzy_identity=identity,
                )
        if not linked:
            # A changed price can move a re-listing into another fuzzy bucket
            strict = await detect_version(oldest, job_id, storage, now=now)
            if strict.previous_version_id is not None:
                by_hash[oldest.hash] = strict
                plan.superseded_ids.add(strict.previous_version_id)

        # Walk from the oldest upwards so price history accumulates along the chain
        for newer, older in reversed(list(pairwise(ordered))):
            plan.pending_links.append(PendingVersionLink(newer.hash, older.hash))
            predecessor = by_hash[older.hash]
            # same key as the ordering above: an unknown date counts as the oldest
            predecessor_date = (
                predecessor.published_at if predecessor.published_at is not None else 0
            )
            by_hash[newer.hash] = _with_predecessor_history(
                by_hash[newer.hash], predecessor, predecessor_date, now
            )

    for listing_hash in order:
        listing = by_hash[listing_hash]
        if listing.fuzzy_identity is not None:
            continue
        versioned = await detect_version(listing, job_id, storage, now=now)
        if versioned.previous_version_id is not None:
            plan.superseded_ids.add(versioned.previous_version_id)
        by_hash[listing_hash] = versioned

    plan.listings = [by_hash[h] for h in order]
    logger.info(
        "version_detection_complete",
        job_id=job_id,
        listings=len(plan.listings),
        batch_links=len(plan.pending_links),
        stored_links=len(plan.superseded_ids),
    )
    return plan


async def resolve_batch_version_chains(
    job_id: str, links: list[PendingVersionLink], storage: ListingStorage
) -> int:
    """Turn pending in-batch links into ``previous_version_id`` updates.

    Both ends are looked up in one batched read. Links whose listings cannot be
    found are dropped.

    Returns:
        Number of links applied.
    """
    if not links:
        return 0

    hashes = [h for link in links for h in (link.source_hash, link.target_hash)]
    ids = await storage.get_ids_for_hashes(job_id, hashes)

    pairs: list[tuple[int, int]] = []
    for link in links:
        source_id = ids.get(link.source_hash)
        target_id = ids.get(link.target_hash)
        if source_id is None or target_id is None:
            logger.debug(
                "pending_version_link_dropped",
                source_hash=link.source_hash,
                target_hash=link.target_hash,
            )
            continue
        pairs.append((source_id, target_id))

    return await storage.apply_version_links(pairs)


async def apply_version_plan(plan: VersionPlan, job_id: str, storage: ListingStorage) -> int:
    """Apply the post-persist part of a plan.

    Resolves pending links, supersedes the stored listings that got a newer
    version, then supersedes every fuzzy-group member except the newest.

    Returns:
        Number of in-batch links resolved.
    """
    if plan.migration_pending:
        return 0
    try:
        resolved = await resolve_batch_version_chains(job_id, plan.pending_links, storage)
        if plan.superseded_ids:
            await storage.set_superseded(sorted(plan.superseded_ids), superseded=True)
        stale = plan.stale_group_hashes()
        if stale:
            await storage.mark_superseded_by_hashes(job_id, stale)
    except MigrationPendingError:
        logger.debug("version_chain_resolution_skipped", reason="migration_pending", job_id=job_id)
        return 0

    logger.debug(
        "version_plan_applied",
        job_id=job_id,
        resolved=resolved,
        superseded=len(plan.superseded_ids),
    )
    return resolved
