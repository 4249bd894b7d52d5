"""Tests for shared provider helpers and the pagination loop."""

from unittest.mock import AsyncMock

import pytest

from immo_watch.models import Listing
from immo_watch.providers import BaseProvider, FetchOptions
from immo_watch.providers.base import RawListing, build_request_url, is_one_of, listing_hash


class StaticProvider(BaseProvider):
    """Provider with canned pages, hashing raw items by their ``id``."""

    def __init__(self, pages: list[list[RawListing]]) -> None:
        self.pages = pages

    @property
    def id(self) -> str:
        return "static"

    async def fetch(
        self, url: str, known_hashes: set[str], options: FetchOptions
    ) -> list[RawListing]:
        async def fetch_page(page: int) -> list[RawListing]:
            return self.pages[page - 1] if page <= len(self.pages) else []

        return await self._paginate(
            fetch_page,
            max_pages=len(self.pages) + 1,
            known_hashes=known_hashes,
            options=options,
        )

    def normalize(self, raw: RawListing) -> Listing | None:
        return Listing(hash=raw["id"], provider=self.id, title=raw.get("title"))

    def raw_hash(self, raw: RawListing) -> str | None:
        return raw["id"]


class TestBuildRequestUrl:
    def test_appends_sort_param(self) -> None:
        assert (
            build_request_url("https://example.com/search?city=berlin", "sort=date_desc")
            == "https://example.com/search?city=berlin&sort=date_desc"
        )

    def test_url_without_query(self) -> None:
        assert (
            build_request_url("https://example.com/search", "sort=date_desc")
            == "https://example.com/search?sort=date_desc"
        )

    def test_already_present(self) -> None:
        url = "https://example.com/search?sort=date_desc&city=berlin"
        assert build_request_url(url, "sort=date_desc") == url

    def test_no_sort_param(self) -> None:
        assert build_request_url("https://example.com/search", None) == "https://example.com/search"


class TestListingHash:
    def test_stable_and_short(self) -> None:
        assert listing_hash("42", 1200) == listing_hash("42", 1200)
        assert len(listing_hash("42", 1200)) == 16

    def test_price_change_changes_hash(self) -> None:
        assert listing_hash("42", 1200) != listing_hash("42", 1250)

    def test_none_is_empty(self) -> None:
        assert listing_hash("42", None) == listing_hash("42", "")


class TestFilter:
    def test_is_one_of_is_case_insensitive(self) -> None:
        assert is_one_of("Schöne Wohnung mit WBS", ["wbs"])
        assert not is_one_of("Schöne Wohnung", ["wbs", ""])
        assert not is_one_of(None, ["wbs"])

    @pytest.mark.parametrize(
        ("title", "description", "kept"),
        [
            ("Nur mit WBS", None, False),
            ("Wohnung", "Tausch gesucht", False),
            ("Wohnung", "Ruhige Lage", True),
        ],
    )
    def test_blacklist(self, title: str, description: str | None, kept: bool) -> None:
        provider = StaticProvider([])
        listing = Listing(hash="h", provider="static", title=title, description=description)
        options = FetchOptions(blacklist=("wbs", "tausch"))

        assert provider.filter(listing, options) is kept

    def test_empty_blacklist_keeps_everything(self) -> None:
        listing = Listing(hash="h", provider="static", title="Nur mit WBS")
        assert StaticProvider([]).filter(listing, FetchOptions())


class TestPaginate:
    async def test_stops_on_empty_page(self) -> None:
        provider = StaticProvider([[{"id": "a"}], [{"id": "b"}]])

        items = await provider.fetch("url", set(), FetchOptions())

        assert [item["id"] for item in items] == ["a", "b"]

    async def test_early_stop_when_page_only_holds_known_items(self) -> None:
        provider = StaticProvider([[{"id": "a"}, {"id": "b"}], [{"id": "c"}]])

        items = await provider.fetch("url", {"a", "b"}, FetchOptions())

        assert [item["id"] for item in items] == ["a", "b"]

    async def test_partially_known_page_continues(self) -> None:
        provider = StaticProvider([[{"id": "a"}, {"id": "new"}], [{"id": "c"}]])

        items = await provider.fetch("url", {"a"}, FetchOptions())

        assert [item["id"] for item in items] == ["a", "new", "c"]

    async def test_full_fetch_ignores_known_items(self) -> None:
        provider = StaticProvider([[{"id": "a"}], [{"id": "b"}]])

        items = await provider.fetch("url", {"a", "b"}, FetchOptions(full_fetch=True))

        assert len(items) == 2

    async def test_page_delay_between_pages_only(self) -> None:
        provider = StaticProvider([])
        delay = AsyncMock()
        pages = {1: [{"id": "a"}], 2: [{"id": "b"}], 3: [{"id": "c"}]}

        async def fetch_page(page: int) -> list[RawListing]:
            return pages[page]

        await provider._paginate(
            fetch_page, max_pages=3, known_hashes=set(), options=FetchOptions(), page_delay=delay
        )

        assert delay.await_count == 2

    async def test_defaults(self) -> None:
        provider = StaticProvider([])

        assert provider.enabled
        assert provider.sort_param is None
        assert provider.required_fields == ("title", "price", "link")
        assert await provider.get_details("x") is None
