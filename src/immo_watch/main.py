"""Main entry point for immo-watch."""

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from immo_watch.config import Settings
from immo_watch.db.storage import ListingStorage
from immo_watch.filters.similarity import find_similar_listings
from immo_watch.filters.similarity_cache import SimilarityCache
from immo_watch.logging import configure_logging, get_logger
from immo_watch.media import MediaDownloader
from immo_watch.models import JobConfig
from immo_watch.notifiers.base import NotificationAdapter, NotificationDispatcher
from immo_watch.notifiers.console import ConsoleNotifier
from immo_watch.notifiers.telegram import TelegramNotifier
from immo_watch.pipeline import (
    Delays,
    Failed,
    ListingPipeline,
    NoNewListings,
    Notified,
    RunOutcome,
    run_job,
)
from immo_watch.providers.json_api import JsonApiProvider
from immo_watch.utils.geocoding import NominatimGeocoder
from immo_watch.versioning.chain import ManualLinkService

logger = get_logger(__name__)


def _select_jobs(settings: Settings, job_ids: Sequence[str] | None) -> list[JobConfig]:
    jobs = [job for job in settings.load_jobs() if job.enabled]
    if job_ids:
        wanted = set(job_ids)
        jobs = [job for job in jobs if job.id in wanted]
    return jobs


def _build_adapters(settings: Settings, *, dry_run: bool) -> list[NotificationAdapter]:
    if dry_run:
        return [ConsoleNotifier()]
    if not settings.telegram_configured:
        logger.warning("telegram_not_configured", fallback="console")
        return [ConsoleNotifier()]
    return [
        TelegramNotifier(
            bot_token=settings.telegram_bot_token.get_secret_value(),
            chat_id=settings.telegram_chat_id,
        )
    ]


def _summarize(outcomes: list[RunOutcome]) -> dict[str, int]:
    return {
        "notified": sum(len(o.listings) for o in outcomes if isinstance(o, Notified)),
        "no_new": sum(1 for o in outcomes if isinstance(o, NoNewListings)),
        "failed": sum(1 for o in outcomes if isinstance(o, Failed)),
    }


async def run_pipeline(
    settings: Settings,
    *,
    job_ids: Sequence[str] | None = None,
    dry_run: bool = False,
    similarity_cache: SimilarityCache | None = None,
) -> list[RunOutcome]:
    """Run every enabled job once. Jobs run concurrently, providers of a job in sequence.

    Args:
        settings: Application settings.
        job_ids: Only run these jobs (None for all).
        dry_run: Print notifications instead of sending them, skip media downloads.
        similarity_cache: Cache shared between runs; a fresh one is used when None.
    """
    jobs = _select_jobs(settings, job_ids)
    if not jobs:
        logger.info("no_jobs_to_run")
        return []

    storage = ListingStorage(settings.database_path)
    await storage.initialize()

    cache = similarity_cache or SimilarityCache(settings.similarity_cache_ttl_minutes * 60)
    notifier = NotificationDispatcher(_build_adapters(settings, dry_run=dry_run))
    geocoder = NominatimGeocoder(
        settings.geocoder_base_url,
        settings.geocoder_user_agent,
        timeout=settings.http_timeout_seconds,
    )
    media = (
        None
        if dry_run
        else MediaDownloader(
            settings.data_dir,
            timeout=settings.http_timeout_seconds,
            delay_range=(settings.media_delay_min, settings.media_delay_max),
        )
    )
    delays = Delays(
        enrichment=(settings.enrichment_delay_min, settings.enrichment_delay_max),
        media=(settings.media_delay_min, settings.media_delay_max),
    )

    providers: list[JsonApiProvider] = []
    runs = []
    for job in jobs:
        pipelines = []
        for provider_config in job.providers:
            provider = JsonApiProvider(provider_config, timeout=settings.http_timeout_seconds)
            providers.append(provider)
            pipelines.append(
                ListingPipeline(
                    job=job,
                    provider_config=provider_config,
                    provider=provider,
                    storage=storage,
                    notifier=notifier,
                    similarity_cache=cache,
                    geocoder=geocoder,
                    media=media,
                    delays=delays,
                )
            )
        runs.append(run_job(job, pipelines))

    try:
        logger.info("pipeline_started", jobs=len(jobs), dry_run=dry_run)
        results = await asyncio.gather(*runs)
        outcomes = [outcome for job_outcomes in results for outcome in job_outcomes]
        logger.info("pipeline_summary", **_summarize(outcomes))
        return outcomes
    finally:
        for provider in providers:
            await provider.close()
        await geocoder.close()
        if media is not None:
            await media.close()
        await notifier.close()
        await storage.close()


async def serve(settings: Settings, *, job_ids: Sequence[str] | None = None) -> None:
    """Run the pipeline on a recurring schedule."""
    cache = SimilarityCache(settings.similarity_cache_ttl_minutes * 60)
    interval_minutes = settings.pipeline_interval_minutes
    while True:
        logger.info("pipeline_scheduler_running")
        try:
            await run_pipeline(settings, job_ids=job_ids, similarity_cache=cache)
        except Exception:
            logger.error("pipeline_scheduler_error", exc_info=True)
        logger.info("pipeline_scheduler_sleeping", minutes=interval_minutes)
        await asyncio.sleep(interval_minutes * 60)


async def _open_storage(settings: Settings) -> ListingStorage:
    storage = ListingStorage(settings.database_path)
    await storage.initialize()
    return storage


async def link_listings(settings: Settings, listing_id1: int, listing_id2: int) -> int:
    storage = await _open_storage(settings)
    try:
        result = await ManualLinkService(storage).create_link(
            listing_id1, listing_id2, created_by="cli"
        )
    finally:
        await storage.close()
    if not result.success:
        print(f"Error: {result.error}")
        return 1
    if result.already_exists:
        print(f"Listings {listing_id1} and {listing_id2} are already linked.")
    else:
        print(f"Linked {listing_id1} and {listing_id2}; chain head is {result.head_id}.")
    return 0


async def unlink_listings(settings: Settings, listing_id1: int, listing_id2: int) -> int:
    storage = await _open_storage(settings)
    try:
        result = await ManualLinkService(storage).remove_link(listing_id1, listing_id2)
    finally:
        await storage.close()
    if not result.success:
        print(f"Error: {result.error}")
        return 1
    print("Link removed." if result.removed else "No link found between these listings.")
    return 0


async def show_similar(settings: Settings, listing_id: int, *, min_score: int) -> int:
    storage = await _open_storage(settings)
    try:
        target = await storage.get_listing(listing_id)
        if target is None:
            print(f"Error: Listing {listing_id} not found")
            return 1
        candidates = await storage.get_similarity_candidates()
    finally:
        await storage.close()

    matches = find_similar_listings(target, candidates, min_score=min_score)
    if not matches:
        print("No similar listings found.")
    for match in matches:
        listing = match.listing
        print(json.dumps({"id": getattr(listing, "id", None), "title": listing.title}))
        print(json.dumps(match.similarity.to_dict(), indent=2, default=str))
    return 0


async def show_history(settings: Settings, listing_id: int) -> int:
    storage = await _open_storage(settings)
    try:
        history = await ManualLinkService(storage).get_version_history(listing_id)
    finally:
        await storage.close()
    if not history:
        print(f"Error: Listing {listing_id} not found")
        return 1
    for entry in history:
        listing = entry.listing
        marks = ["head"] if entry.is_head else []
        if entry.manually_linked:
            marks.append("manual")
        suffix = f" [{', '.join(marks)}]" if marks else ""
        print(f"{listing.id}: {listing.title} - {listing.price} ({listing.provider}){suffix}")
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="immo-watch - real-estate listing watcher with version tracking"
    )
    parser.add_argument(
        "--job",
        action="append",
        dest="jobs",
        metavar="JOB_ID",
        help="Only run this job (repeatable)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run pipeline without sending Telegram notifications",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the pipeline on a schedule (IMMO_WATCH_PIPELINE_INTERVAL_MINUTES)",
    )
    parser.add_argument(
        "--link",
        nargs=2,
        type=int,
        metavar=("ID1", "ID2"),
        help="Link two listings as versions of the same property",
    )
    parser.add_argument(
        "--unlink",
        nargs=2,
        type=int,
        metavar=("ID1", "ID2"),
        help="Detach the second listing from the first listing's version chain",
    )
    parser.add_argument(
        "--similar",
        type=int,
        metavar="ID",
        help="List stored listings similar to this one",
    )
    parser.add_argument(
        "--min-score",
        type=int,
        default=50,
        help="Minimum similarity score for --similar",
    )
    parser.add_argument(
        "--history",
        type=int,
        metavar="ID",
        help="Show the version history of a listing",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    args = parser.parse_args()

    try:
        settings = Settings()
    except ValidationError as e:
        configure_logging()
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        print("Settings are read from IMMO_WATCH_* environment variables or a .env file.")
        sys.exit(1)

    configure_logging("debug" if args.debug else settings.log_level, json_output=settings.log_json)

    if args.link:
        sys.exit(asyncio.run(link_listings(settings, *args.link)))
    if args.unlink:
        sys.exit(asyncio.run(unlink_listings(settings, *args.unlink)))
    if args.similar is not None:
        sys.exit(asyncio.run(show_similar(settings, args.similar, min_score=args.min_score)))
    if args.history is not None:
        sys.exit(asyncio.run(show_history(settings, args.history)))

    logger.info(
        "starting_immo_watch",
        jobs_file=settings.jobs_file,
        database=settings.database_path,
        dry_run=args.dry_run,
        serve=args.serve,
    )
    try:
        if args.serve:
            asyncio.run(serve(settings, job_ids=args.jobs))
        else:
            outcomes = asyncio.run(
                run_pipeline(settings, job_ids=args.jobs, dry_run=args.dry_run)
            )
            if any(isinstance(outcome, Failed) for outcome in outcomes):
                sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: Jobs file not found: {e.filename}")
        sys.exit(1)
    except ValidationError as e:
        print(f"Error: Invalid jobs file. {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("shutdown_requested")


if __name__ == "__main__":
    main()
