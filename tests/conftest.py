"""Shared pytest fixtures."""

import gc
import itertools
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from immo_watch.config import Settings
from immo_watch.db.storage import ListingStorage
from immo_watch.models import JobConfig, Listing, ProviderConfig, StoredListing

# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture(autouse=True)
def _cleanup_aiosqlite_threads():
    """Safety net: detect and stop leaked aiosqlite worker threads.

    aiosqlite creates a non-daemon worker thread per connection. If a test
    leaks a connection, the thread prevents clean process exit.
    """
    yield

    from aiosqlite.core import Connection

    leaked = False
    gc.collect()
    for obj in gc.get_objects():
        if isinstance(obj, Connection) and obj._connection is not None:
            leaked = True
            obj.stop()

    if leaked:
        import warnings

        warnings.warn(
            "Test leaked aiosqlite connection(s) - add 'await storage.close()' to fixture teardown",
            ResourceWarning,
            stacklevel=1,
        )


@pytest_asyncio.fixture
async def storage() -> AsyncGenerator[ListingStorage, None]:
    """In-memory storage with all migrations applied."""
    s = ListingStorage(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def legacy_storage() -> AsyncGenerator[ListingStorage, None]:
    """In-memory storage whose identity/version migration has not run yet."""
    s = ListingStorage(":memory:")
    await s.initialize(apply_migrations=False)
    yield s
    await s.close()


_hash_counter = itertools.count(1)


@pytest.fixture
def make_listing() -> Callable[..., Listing]:
    """Factory for normalized listings with sensible defaults."""

    def _make(**overrides: Any) -> Listing:
        defaults: dict[str, Any] = {
            "hash": f"hash-{next(_hash_counter)}",
            "provider": "immoscout",
            "title": "Helle 3-Zimmer-Wohnung",
            "address": "Musterstraße 12, 10115 Berlin",
            "price": 1200,
            "size": 70,
            "rooms": 3,
            "link": "https://example.com/expose/1",
        }
        defaults.update(overrides)
        return Listing(**defaults)

    return _make


@pytest.fixture
def persist_listing(
    storage: ListingStorage,
) -> Callable[..., Any]:
    """Persist a listing and return it as stored."""

    async def _persist(listing: Listing, job_id: str = "job-1") -> StoredListing:
        await storage.persist(job_id, [listing])
        ids = await storage.get_ids_for_hashes(job_id, [listing.hash])
        stored = await storage.get_listing(ids[listing.hash])
        assert stored is not None
        return stored

    return _persist


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        id="immoscout",
        url="https://api.example.com/search?type=apartmentrent",
        sort_param="sorting=-firstactivation",
        items_path="results",
        field_map={"address": "address.line"},
        detail_url="https://api.example.com/expose/{id}",
        max_pages=3,
    )


@pytest.fixture
def job(provider_config: ProviderConfig) -> JobConfig:
    return JobConfig(id="job-1", name="Berlin Mitte", providers=(provider_config,))
