"""Per-run listing pipeline: fetch, filter, dedup, enrich, version, persist, notify.

One ``ListingPipeline`` handles one (job, provider) pair. Every run ends in a
``RunOutcome``; exceptions never escape ``run()``.
"""

import asyncio
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from immo_watch.db.storage import ListingStorage
from immo_watch.filters.similarity_cache import SimilarityCache
from immo_watch.logging import get_logger
from immo_watch.models import Coordinates, JobConfig, Listing, MediaPaths, ProviderConfig
from immo_watch.notifiers.base import NotificationDispatcher
from immo_watch.providers.base import BaseProvider, FetchOptions, build_request_url
from immo_watch.utils.geo import haversine_distance
from immo_watch.versioning.detector import (
    apply_version_plan,
    detect_versions_with_batch_awareness,
)

logger = get_logger(__name__)


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Coordinates | None: ...


class MediaFetcher(Protocol):
    async def download(
        self, listing_hash: str, image_urls: Sequence[str], documents: Sequence[str]
    ) -> MediaPaths: ...


@dataclass(frozen=True)
class Notified:
    listings: list[Listing]


@dataclass(frozen=True)
class NoNewListings:
    """The run ended early because nothing was left after ``stage``."""

    stage: str


@dataclass(frozen=True)
class Failed:
    error: Exception


RunOutcome = Notified | NoNewListings | Failed


@dataclass(frozen=True)
class Delays:
    """Randomized pauses between per-listing calls, in seconds."""

    enrichment: tuple[float, float] = (0.5, 1.5)
    media: tuple[float, float] = (0.2, 0.5)


async def _random_delay(bounds: tuple[float, float]) -> None:
    low, high = bounds
    if high > 0:
        await asyncio.sleep(random.uniform(low, high))


@dataclass
class ListingPipeline:
    """Turns one provider fetch into persisted, versioned and notified listings."""

    job: JobConfig
    provider_config: ProviderConfig
    provider: BaseProvider
    storage: ListingStorage
    notifier: NotificationDispatcher
    similarity_cache: SimilarityCache
    geocoder: Geocoder | None = None
    media: MediaFetcher | None = None
    delays: Delays = field(default_factory=Delays)

    @property
    def options(self) -> FetchOptions:
        return FetchOptions(blacklist=self.job.blacklist, full_fetch=self.job.full_fetch)

    async def run(self) -> RunOutcome:
        """Execute all stages. Never raises."""
        with structlog.contextvars.bound_contextvars(job_id=self.job.id, provider=self.provider.id):
            try:
                outcome = await self._execute()
            except Exception as e:
                logger.error("pipeline_failed", error=str(e), exc_info=True)
                return Failed(error=e)

            if isinstance(outcome, NoNewListings):
                logger.debug("no_new_listings", stage=outcome.stage)
            else:
                logger.info("pipeline_complete", notified=len(outcome.listings))
            return outcome

    async def _execute(self) -> Notified | NoNewListings:
        # Steps 1-3: fetch and normalize
        url = build_request_url(self.provider_config.url, self.provider.sort_param)
        known_hashes = await self.storage.get_known_hashes(self.job.id, self.provider.id)
        logger.info("pipeline_started", phase="fetch", known=len(known_hashes))
        raw_listings = await self.provider.fetch(url, known_hashes, self.options)
        listings = [
            listing
            for listing in (self.provider.normalize(raw) for raw in raw_listings)
            if listing is not None
        ]
        logger.info("fetch_summary", raw=len(raw_listings), normalized=len(listings))

        # Step 4: required fields and blacklist
        listings = self._filter(listings)

        # Step 5: new listings only
        listings = self._only_new(listings, known_hashes)
        if not listings:
            return NoNewListings(stage="diff")

        # Steps 6-8: best-effort enrichment
        logger.info("pipeline_started", phase="enrichment", count=len(listings))
        listings = await self._geocode(listings)
        listings = await self._enrich(listings)
        listings = await self._download_media(listings)

        # Steps 9-10: versioning and persistence
        logger.info("pipeline_started", phase="versioning", count=len(listings))
        plan = await detect_versions_with_batch_awareness(listings, self.job.id, self.storage)
        async with self.storage.transaction():
            await self.storage.persist(self.job.id, plan.listings)
            await apply_version_plan(plan, self.job.id, self.storage)
        listings = plan.listings

        # Step 11: distance to home
        await self._update_distances(listings)

        # Step 12: drop look-alikes already notified from another provider
        listings = self._filter_similar(listings)
        if not listings:
            return NoNewListings(stage="similarity")

        # Step 13: notify
        await self.notifier.send(self.provider.id, listings, self.job)
        return Notified(listings=listings)

    def _filter(self, listings: list[Listing]) -> list[Listing]:
        required = self.provider.required_fields
        complete = [listing for listing in listings if not listing.missing_fields(required)]
        allowed = [listing for listing in complete if self.provider.filter(listing, self.options)]
        logger.info(
            "filter_summary",
            incomplete=len(listings) - len(complete),
            blacklisted=len(complete) - len(allowed),
            remaining=len(allowed),
        )
        return allowed

    def _only_new(self, listings: list[Listing], known_hashes: set[str]) -> list[Listing]:
        seen: set[str] = set()
        new: list[Listing] = []
        for listing in listings:
            if listing.hash in known_hashes or listing.hash in seen:
                continue
            seen.add(listing.hash)
            new.append(listing)
        logger.info("new_listing_summary", new_count=len(new), total=len(listings))
        return new

    async def _lookup_coordinates(self, address: str) -> Coordinates | None:
        cached = await self.storage.get_coordinates_by_address(address)
        if cached is not None:
            return cached
        if self.geocoder is None:
            return None
        return await self.geocoder.geocode(address)

    async def _geocode(self, listings: list[Listing]) -> list[Listing]:
        result: list[Listing] = []
        for listing in listings:
            if listing.address and listing.coordinates is None:
                try:
                    coords = await self._lookup_coordinates(listing.address)
                    if coords is not None:
                        listing = listing.model_copy(
                            update={"latitude": coords.lat, "longitude": coords.lng}
                        )
                except Exception as e:
                    logger.debug("geocode_skipped", hash=listing.hash, error=str(e))
            result.append(listing)
        return result

    async def _enrich(self, listings: list[Listing]) -> list[Listing]:
        result: list[Listing] = []
        for i, listing in enumerate(listings):
            if listing.provider_listing_id:
                if i > 0:
                    await _random_delay(self.delays.enrichment)
                try:
                    patch = await self.provider.get_details(listing.provider_listing_id)
                    if patch is not None:
                        listing = listing.with_details(patch)
                except Exception as e:
                    logger.debug("enrichment_skipped", hash=listing.hash, error=str(e))
            result.append(listing)
        return result

    async def _download_media(self, listings: list[Listing]) -> list[Listing]:
        if self.media is None:
            return listings
        result: list[Listing] = []
        for i, listing in enumerate(listings):
            images = [url for url in (listing.image, *listing.additional_images) if url]
            if images or listing.documents:
                if i > 0:
                    await _random_delay(self.delays.media)
                try:
                    paths = await self.media.download(listing.hash, images, listing.documents)
                    listing = listing.model_copy(
                        update={
                            "local_images": paths.image_paths,
                            "local_documents": paths.doc_paths,
                        }
                    )
                except Exception as e:
                    logger.debug("media_skipped", hash=listing.hash, error=str(e))
            result.append(listing)
        return result

    async def _update_distances(self, listings: list[Listing]) -> None:
        home = self.job.home
        if home is None:
            return
        located = [listing for listing in listings if listing.coordinates is not None]
        if not located:
            return
        ids = await self.storage.get_ids_for_hashes(
            self.job.id, [listing.hash for listing in located]
        )
        for listing in located:
            listing_id = ids.get(listing.hash)
            coords = listing.coordinates
            if listing_id is None or coords is None:
                continue
            meters = haversine_distance(coords.lat, coords.lng, home.latitude, home.longitude)
            await self.storage.update_distance(listing_id, meters)

    def _filter_similar(self, listings: list[Listing]) -> list[Listing]:
        remaining = [
            listing
            for listing in listings
            if not self.similarity_cache.check_and_add_entry(
                listing.title, listing.address, listing.price
            )
        ]
        if len(remaining) < len(listings):
            logger.debug("similar_listings_filtered", count=len(listings) - len(remaining))
        return remaining


async def run_job(job: JobConfig, pipelines: Sequence[ListingPipeline]) -> list[RunOutcome]:
    """Run the pipelines of one job, one provider after the other."""
    outcomes: list[RunOutcome] = []
    for pipeline in pipelines:
        if not pipeline.provider.enabled:
            logger.debug("provider_disabled", job_id=job.id, provider=pipeline.provider.id)
            continue
        outcomes.append(await pipeline.run())
    return outcomes
