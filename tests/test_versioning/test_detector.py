"""Tests for batch-aware version detection."""

from collections.abc import Callable

from immo_watch.db.storage import ListingStorage
from immo_watch.models import Listing, PriceHistoryEntry, StoredListing
from immo_watch.versioning.detector import (
    PendingVersionLink,
    VersionPlan,
    apply_version_plan,
    detect_version,
    detect_versions_with_batch_awareness,
    merge_price_history,
    resolve_batch_version_chains,
)

MakeListing = Callable[..., Listing]

JOB_ID = "job-1"


async def _ingest(
    storage: ListingStorage, listings: list[Listing], *, now: int | None = None
) -> VersionPlan:
    plan = await detect_versions_with_batch_awareness(listings, JOB_ID, storage, now=now)
    await storage.persist(JOB_ID, plan.listings)
    await apply_version_plan(plan, JOB_ID, storage)
    return plan


async def _stored(storage: ListingStorage, listing_hash: str) -> StoredListing:
    ids = await storage.get_ids_for_hashes(JOB_ID, [listing_hash])
    stored = await storage.get_listing(ids[listing_hash])
    assert stored is not None
    return stored


# ---------------------------------------------------------------------------
# merge_price_history
# ---------------------------------------------------------------------------


class TestMergePriceHistory:
    def test_sorted_and_unique(self) -> None:
        change_set = {"priceHistory": [{"date": 300, "price": 1300}]}
        merged = merge_price_history(
            change_set,
            previous=[
                PriceHistoryEntry(date=100, price=1100),
                PriceHistoryEntry(date=300, price=9),
            ],
            current=PriceHistoryEntry(date=200, price=1200),
        )
        assert merged["priceHistory"] == [
            {"date": 100, "price": 1100},
            {"date": 200, "price": 1200},
            {"date": 300, "price": 1300},
        ]

    def test_current_replaces_same_date(self) -> None:
        change_set = {"priceHistory": [{"date": 100, "price": 1000}]}
        merged = merge_price_history(change_set, current=PriceHistoryEntry(date=100, price=1050))
        assert merged["priceHistory"] == [{"date": 100, "price": 1050}]

    def test_keeps_other_keys_and_does_not_mutate(self) -> None:
        change_set = {"note": "x"}
        merged = merge_price_history(change_set, current=PriceHistoryEntry(date=1, price=2))
        assert merged["note"] == "x"
        assert "priceHistory" not in change_set

    def test_ignores_malformed_entries(self) -> None:
        change_set = {"priceHistory": [{"date": None, "price": 1}, "junk", {"date": 5, "price": 7}]}
        assert merge_price_history(change_set)["priceHistory"] == [{"date": 5, "price": 7}]


# ---------------------------------------------------------------------------
# detect_version
# ---------------------------------------------------------------------------


class TestDetectVersion:
    async def test_links_price_change(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await _ingest(storage, [make_listing(hash="x", price=1200)])
        existing = await _stored(storage, "x")

        result = await detect_version(
            make_listing(hash="y", price=1250), JOB_ID, storage, now=existing.created_at + 1
        )

        assert result.previous_version_id == existing.id
        assert result.property_identity == existing.property_identity

    async def test_unchanged_relisting_is_not_linked(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await _ingest(storage, [make_listing(hash="x")])

        result = await detect_version(make_listing(hash="y"), JOB_ID, storage)

        assert result.previous_version_id is None
        assert result.property_identity is not None

    async def test_no_address(self, storage: ListingStorage, make_listing: MakeListing) -> None:
        listing = make_listing(address=None)
        assert await detect_version(listing, JOB_ID, storage) == listing

    async def test_other_job_is_ignored(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await storage.persist("other-job", [make_listing(hash="x", price=1000)])

        result = await detect_version(make_listing(hash="y"), JOB_ID, storage)

        assert result.previous_version_id is None

    async def test_migration_pending(
        self, legacy_storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        listing = make_listing()

        result = await detect_version(listing, JOB_ID, legacy_storage)

        assert result.previous_version_id is None
        assert result.property_identity is not None


# ---------------------------------------------------------------------------
# detect_versions_with_batch_awareness
# ---------------------------------------------------------------------------


class TestBatchDetection:
    async def test_price_update_across_runs(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await _ingest(
            storage, [make_listing(hash="x", address="Musterstr. 12, 10115 Berlin", price=1200)]
        )
        x = await _stored(storage, "x")
        now = x.created_at + 60_000

        await _ingest(
            storage,
            [make_listing(hash="y", address="Musterstraße 12, 10115 Berlin", price=1250)],
            now=now,
        )

        y = await _stored(storage, "y")
        x = await _stored(storage, "x")
        assert y.previous_version_id == x.id
        assert [(e.date, e.price) for e in y.price_history] == [
            (x.created_at, 1200),
            (now, 1250),
        ]
        assert x.is_superseded
        assert not y.is_superseded

    async def test_batch_chain_ordered_by_publication(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await _ingest(storage, [make_listing(hash="old", published_at=50)])
        old = await _stored(storage, "old")

        plan = await _ingest(
            storage,
            [
                make_listing(hash="p100", published_at=100),
                make_listing(hash="p300", published_at=300),
                make_listing(hash="p200", published_at=200),
            ],
        )

        p100 = await _stored(storage, "p100")
        p200 = await _stored(storage, "p200")
        p300 = await _stored(storage, "p300")
        old = await _stored(storage, "old")

        assert p300.previous_version_id == p200.id
        assert p200.previous_version_id == p100.id
        assert p100.previous_version_id == old.id
        assert [old.is_superseded, p100.is_superseded, p200.is_superseded] == [True] * 3
        assert not p300.is_superseded
        assert set(plan.pending_links) == {
            PendingVersionLink("p300", "p200"),
            PendingVersionLink("p200", "p100"),
        }

    async def test_price_history_accumulates_along_batch_chain(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        plan = await detect_versions_with_batch_awareness(
            [
                make_listing(hash="a", published_at=100, price=1200),
                make_listing(hash="b", published_at=200, price=1210),
            ],
            JOB_ID,
            storage,
            now=1_000,
        )

        newest = next(listing for listing in plan.listings if listing.hash == "b")
        assert [(e.date, e.price) for e in newest.price_history] == [(100, 1200), (1_000, 1210)]

    async def test_unknown_publication_date_counts_as_oldest(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        plan = await detect_versions_with_batch_awareness(
            [make_listing(hash="dated", published_at=100), make_listing(hash="undated")],
            JOB_ID,
            storage,
        )

        assert plan.pending_links == [PendingVersionLink("dated", "undated")]
        assert plan.stale_group_hashes() == ["undated"]

    async def test_undated_predecessor_price_survives_in_history(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        plan = await detect_versions_with_batch_awareness(
            [
                make_listing(hash="undated", price=1200),
                make_listing(hash="dated", published_at=500, price=1210),
            ],
            JOB_ID,
            storage,
            now=1_000,
        )

        dated = next(listing for listing in plan.listings if listing.hash == "dated")
        assert [(e.date, e.price) for e in dated.price_history] == [(0, 1200), (1_000, 1210)]

    async def test_duplicate_hashes_in_batch_are_collapsed(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        listing = make_listing(hash="same")

        plan = await detect_versions_with_batch_awareness([listing, listing], JOB_ID, storage)

        assert [m.hash for m in plan.listings] == ["same"]
        assert plan.pending_links == []

    async def test_identities_are_set(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        plan = await detect_versions_with_batch_awareness([make_listing()], JOB_ID, storage)

        listing = plan.listings[0]
        assert listing.fuzzy_identity is not None
        assert listing.property_identity is not None

    async def test_listing_without_fuzzy_identity_uses_strict_path(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        no_zip = "Musterstraße 12, Berlin"
        await _ingest(storage, [make_listing(hash="x", address=no_zip, rooms=None)])
        x = await _stored(storage, "x")
        assert x.fuzzy_identity is None

        plan = await _ingest(
            storage, [make_listing(hash="y", address=no_zip, rooms=None, price=1250)]
        )

        y = await _stored(storage, "y")
        assert y.previous_version_id == x.id
        assert plan.superseded_ids == {x.id}

    async def test_deleted_listings_are_not_matched(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await _ingest(storage, [make_listing(hash="x")])
        x = await _stored(storage, "x")
        await storage.soft_delete_listings([x.id])

        await _ingest(storage, [make_listing(hash="y", price=1250)])

        y = await _stored(storage, "y")
        assert y.previous_version_id is None

    async def test_migration_pending_skips_versioning(
        self, legacy_storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        plan = await detect_versions_with_batch_awareness(
            [make_listing(hash="a", published_at=1), make_listing(hash="b", published_at=2)],
            JOB_ID,
            legacy_storage,
        )

        assert plan.migration_pending
        assert plan.pending_links == []
        await legacy_storage.persist(JOB_ID, plan.listings)
        assert await apply_version_plan(plan, JOB_ID, legacy_storage) == 0


class TestResolveBatchVersionChains:
    async def test_drops_links_with_unknown_ends(
        self, storage: ListingStorage, make_listing: MakeListing
    ) -> None:
        await storage.persist(JOB_ID, [make_listing(hash="a"), make_listing(hash="b")])

        applied = await resolve_batch_version_chains(
            JOB_ID,
            [PendingVersionLink("b", "a"), PendingVersionLink("b", "missing")],
            storage,
        )

        assert applied == 1
        a = await _stored(storage, "a")
        b = await _stored(storage, "b")
        assert b.previous_version_id == a.id
        assert a.is_superseded

    async def test_no_links(self, storage: ListingStorage) -> None:
        assert await resolve_batch_version_chains(JOB_ID, [], storage) == 0
