"""Tests for Pydantic models."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from immo_watch.models import (
    Coordinates,
    DetailPatch,
    Listing,
    ManualLink,
    ProviderConfig,
    StoredListing,
)


def _listing(**overrides: object) -> Listing:
    data: dict[str, object] = {"hash": "abc", "provider": "immoscout"}
    data.update(overrides)
    return Listing.model_validate(data)


class TestListing:
    """Tests for the Listing model."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("1.250 €", 1250.0),
            ("1.234,50 €", 1234.5),
            ("70 m²", 70.0),
            ("3,5 Zimmer", 3.5),
            (900, 900.0),
            ("auf Anfrage", None),
            (0, None),
            (-5, None),
        ],
    )
    def test_numeric_fields_parse_provider_strings(
        self, raw: object, expected: float | None
    ) -> None:
        assert _listing(price=raw).price == expected

    def test_address_whitespace_collapsed(self) -> None:
        assert _listing(address="  Musterstraße   12,\n 10115  Berlin ").address == (
            "Musterstraße 12, 10115 Berlin"
        )

    def test_blank_address_is_missing(self) -> None:
        assert _listing(address="   ").address is None

    def test_hash_required(self) -> None:
        with pytest.raises(ValidationError):
            Listing(hash="", provider="immoscout")

    def test_coordinates_must_come_in_pairs(self) -> None:
        with pytest.raises(ValidationError, match="Both latitude and longitude"):
            _listing(latitude=52.5)

    def test_coordinates_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            _listing(latitude=95.0, longitude=13.4)

    def test_coordinates_property(self) -> None:
        assert _listing(latitude=52.5, longitude=13.4).coordinates == Coordinates(
            lat=52.5, lng=13.4
        )
        assert _listing().coordinates is None

    def test_is_frozen(self) -> None:
        listing = _listing()
        with pytest.raises(ValidationError):
            listing.price = 5  # type: ignore[misc]

    def test_missing_fields(self) -> None:
        listing = _listing(title="Wohnung", price=1000, link="")
        assert listing.missing_fields(("title", "price", "link", "size")) == ["link", "size"]

    def test_price_history_from_change_set(self) -> None:
        listing = _listing(
            change_set={"priceHistory": [{"date": 1, "price": 1000}, {"date": 2, "price": 1100}]}
        )
        assert [(e.date, e.price) for e in listing.price_history] == [(1, 1000), (2, 1100)]
        assert _listing().price_history == []

    @given(st.integers(min_value=1, max_value=10_000_000))
    def test_integer_prices_roundtrip(self, price: int) -> None:
        assert _listing(price=price).price == price


class TestWithDetails:
    def test_merges_only_set_fields(self) -> None:
        listing = _listing(description="Kurz", rooms=3, change_set={"a": 1})
        patch = DetailPatch(
            description="Lange Beschreibung",
            floor=2,
            documents=("https://docs.example.com/grundriss.pdf",),
            change_set={"b": 2},
        )

        enriched = listing.with_details(patch)

        assert enriched.description == "Lange Beschreibung"
        assert enriched.rooms == 3
        assert enriched.floor == 2
        assert enriched.documents == ("https://docs.example.com/grundriss.pdf",)
        assert enriched.additional_images == ()
        assert enriched.change_set == {"a": 1, "b": 2}
        assert listing.description == "Kurz"

    def test_empty_patch_changes_nothing(self) -> None:
        listing = _listing(description="Kurz")
        assert listing.with_details(DetailPatch()) == listing

    def test_rooms_parsed_from_string(self) -> None:
        assert DetailPatch(rooms="2,5").rooms == 2.5


class TestStoredListing:
    def test_effective_date_prefers_publication(self) -> None:
        base = {"hash": "a", "provider": "p", "id": 1, "job_id": "j", "created_at": 500}
        assert StoredListing.model_validate({**base, "published_at": 100}).effective_date == 100
        assert StoredListing.model_validate(base).effective_date == 500


class TestManualLink:
    def test_other_end(self) -> None:
        link = ManualLink(id="l", listing_id_low=1, listing_id_high=2, created_at=0)
        assert link.other_end(1) == 2
        assert link.other_end(2) == 1

    @pytest.mark.parametrize(("low", "high"), [(2, 1), (3, 3)])
    def test_pair_must_be_ordered(self, low: int, high: int) -> None:
        with pytest.raises(ValidationError):
            ManualLink(id="l", listing_id_low=low, listing_id_high=high, created_at=0)


class TestProviderConfig:
    def test_defaults(self) -> None:
        config = ProviderConfig(id="immoscout", url="https://api.example.com/search")
        assert config.enabled
        assert config.required_fields == ("title", "price", "link")
        assert config.page_param == "page"

    def test_unknown_required_field(self) -> None:
        with pytest.raises(ValidationError, match="Unknown required fields"):
            ProviderConfig(id="p", url="u", required_fields=("title", "colour"))

    def test_max_pages_positive(self) -> None:
        with pytest.raises(ValidationError):
            ProviderConfig(id="p", url="u", max_pages=0)
