"""Tests for the CLI entry point and its commands."""

import json
import sys
from pathlib import Path
from typing import Any

import pytest
from pytest_httpx import HTTPXMock

from immo_watch import main as main_module
from immo_watch.config import Settings
from immo_watch.db.storage import ListingStorage
from immo_watch.filters.similarity_cache import SimilarityCache
from immo_watch.main import (
    link_listings,
    main,
    run_pipeline,
    show_history,
    show_similar,
    unlink_listings,
)
from immo_watch.models import Listing
from immo_watch.pipeline import Failed, NoNewListings, Notified

SEARCH_URL = "https://api.example.com/search?type=apartmentrent&sorting=-firstactivation&page=1"


def _item(item_id: int, price: int = 1200) -> dict[str, Any]:
    return {
        "id": item_id,
        "title": f"Altbauwohnung {item_id}",
        "address": f"Torstraße {item_id}, 10119 Berlin",
        "price": price,
        "size": 70,
        "rooms": 3,
        "latitude": 52.53,
        "longitude": 13.40,
        "link": f"https://example.com/expose/{item_id}",
    }


@pytest.fixture
def jobs_file(tmp_path: Path) -> Path:
    path = tmp_path / "jobs.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "berlin",
                    "name": "Berlin Mitte",
                    "providers": [
                        {
                            "id": "immoscout",
                            "url": "https://api.example.com/search?type=apartmentrent",
                            "sort_param": "sorting=-firstactivation",
                            "items_path": "results",
                            "max_pages": 1,
                        }
                    ],
                },
                {"id": "paused", "enabled": False},
            ]
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def settings(tmp_path: Path, jobs_file: Path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "listings.db"),
        data_dir=str(tmp_path / "data"),
        jobs_file=str(jobs_file),
        enrichment_delay_min=0,
        enrichment_delay_max=0,
        media_delay_min=0,
        media_delay_max=0,
    )


async def _seed(settings: Settings, *listings: Listing) -> list[int]:
    storage = ListingStorage(settings.database_path)
    await storage.initialize()
    try:
        await storage.persist("berlin", list(listings))
        ids = await storage.get_ids_for_hashes("berlin", [listing.hash for listing in listings])
    finally:
        await storage.close()
    return [ids[listing.hash] for listing in listings]


# ---------------------------------------------------------------------------
# run_pipeline
# ---------------------------------------------------------------------------


class TestRunPipeline:
    async def test_dry_run_prints_new_listings(
        self, settings: Settings, httpx_mock: HTTPXMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        httpx_mock.add_response(url=SEARCH_URL, json={"results": [_item(1), _item(2)]})

        outcomes = await run_pipeline(settings, dry_run=True)

        assert len(outcomes) == 1
        assert isinstance(outcomes[0], Notified)
        out = capsys.readouterr().out
        assert "[Berlin Mitte] 2 new listing(s) from immoscout" in out
        assert "Altbauwohnung 1" in out

    async def test_second_run_finds_nothing_new(
        self, settings: Settings, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=SEARCH_URL, json={"results": [_item(1)]})
        httpx_mock.add_response(url=SEARCH_URL, json={"results": [_item(1)]})

        await run_pipeline(settings, dry_run=True)
        outcomes = await run_pipeline(settings, dry_run=True)

        assert outcomes == [NoNewListings(stage="diff")]

    async def test_shared_cache_suppresses_look_alikes(
        self, settings: Settings, httpx_mock: HTTPXMock
    ) -> None:
        cache = SimilarityCache(3600)
        cache.check_and_add_entry("Altbauwohnung 1", "Torstraße 1, 10119 Berlin", 1200)
        httpx_mock.add_response(url=SEARCH_URL, json={"results": [_item(1)]})

        outcomes = await run_pipeline(settings, dry_run=True, similarity_cache=cache)

        assert outcomes == [NoNewListings(stage="similarity")]

    async def test_provider_failure_is_reported(
        self, settings: Settings, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=SEARCH_URL, status_code=503)

        outcomes = await run_pipeline(settings, dry_run=True)

        assert len(outcomes) == 1
        assert isinstance(outcomes[0], Failed)

    async def test_unknown_job_runs_nothing(self, settings: Settings) -> None:
        assert await run_pipeline(settings, job_ids=["hamburg"], dry_run=True) == []

    async def test_disabled_job_is_not_selectable(self, settings: Settings) -> None:
        assert await run_pipeline(settings, job_ids=["paused"], dry_run=True) == []


# ---------------------------------------------------------------------------
# Link commands
# ---------------------------------------------------------------------------


class TestLinkCommands:
    async def test_link_and_unlink(
        self,
        settings: Settings,
        make_listing: Any,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        a, b = await _seed(
            settings,
            make_listing(hash="a", published_at=100),
            make_listing(hash="b", published_at=200),
        )

        assert await link_listings(settings, a, b) == 0
        assert f"chain head is {b}" in capsys.readouterr().out

        assert await link_listings(settings, a, b) == 0
        assert "already linked" in capsys.readouterr().out

        assert await unlink_listings(settings, a, b) == 0
        assert "Link removed." in capsys.readouterr().out

        assert await unlink_listings(settings, a, b) == 0
        assert "No link found" in capsys.readouterr().out

    async def test_link_unknown_listing(
        self, settings: Settings, make_listing: Any, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (a,) = await _seed(settings, make_listing(hash="a"))

        assert await link_listings(settings, a, 9999) == 1
        assert "Error:" in capsys.readouterr().out

    async def test_self_link_is_rejected(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert await link_listings(settings, 5, 5) == 1
        assert "Error:" in capsys.readouterr().out


class TestInspectionCommands:
    async def test_history_marks_head_and_manual_links(
        self, settings: Settings, make_listing: Any, capsys: pytest.CaptureFixture[str]
    ) -> None:
        a, b = await _seed(
            settings,
            make_listing(hash="a", published_at=100, title="Erste"),
            make_listing(hash="b", published_at=200, title="Zweite"),
        )
        await link_listings(settings, a, b)
        capsys.readouterr()

        assert await show_history(settings, a) == 0

        out = capsys.readouterr().out
        assert f"{b}: Zweite" in out
        assert "[head, manual]" in out

    async def test_history_of_unknown_listing(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed(settings)
        assert await show_history(settings, 42) == 1
        assert "not found" in capsys.readouterr().out

    async def test_similar_lists_matches(
        self, settings: Settings, make_listing: Any, capsys: pytest.CaptureFixture[str]
    ) -> None:
        a, _ = await _seed(
            settings,
            make_listing(hash="a", title="Original"),
            make_listing(hash="b", title="Kopie", address="Musterstr. 12, 10115 Berlin"),
        )

        assert await show_similar(settings, a, min_score=50) == 0

        out = capsys.readouterr().out
        assert '"title": "Kopie"' in out
        assert '"confidence"' in out

    async def test_similar_unknown_listing(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await _seed(settings)
        assert await show_similar(settings, 42, min_score=50) == 1


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    @pytest.fixture(autouse=True)
    def _quiet_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)

    def _run(self, monkeypatch: pytest.MonkeyPatch, *args: str) -> int | str | None:
        monkeypatch.setattr(sys, "argv", ["immo-watch", *args])
        with pytest.raises(SystemExit) as exc_info:
            main()
        return exc_info.value.code

    def test_invalid_settings_exit_1(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("IMMO_WATCH_PIPELINE_INTERVAL_MINUTES", "0")

        assert self._run(monkeypatch, "--dry-run") == 1
        assert "Failed to load settings" in capsys.readouterr().out

    def test_missing_jobs_file_exit_1(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("IMMO_WATCH_JOBS_FILE", str(tmp_path / "missing.json"))
        monkeypatch.setenv("IMMO_WATCH_DATABASE_PATH", str(tmp_path / "listings.db"))

        assert self._run(monkeypatch, "--dry-run") == 1
        assert "Jobs file not found" in capsys.readouterr().out

    def test_failed_run_exit_2(
        self,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        jobs_file: Path,
        httpx_mock: HTTPXMock,
    ) -> None:
        monkeypatch.setenv("IMMO_WATCH_JOBS_FILE", str(jobs_file))
        monkeypatch.setenv("IMMO_WATCH_DATABASE_PATH", str(tmp_path / "listings.db"))
        httpx_mock.add_response(url=SEARCH_URL, status_code=500)

        assert self._run(monkeypatch, "--dry-run", "--job", "berlin") == 2

    def test_link_command_exit_code(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("IMMO_WATCH_DATABASE_PATH", str(tmp_path / "listings.db"))

        assert self._run(monkeypatch, "--link", "3", "3") == 1
        assert "Error:" in capsys.readouterr().out
