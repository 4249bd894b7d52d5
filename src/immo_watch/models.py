"""Pydantic models for listings, links and job configuration."""

import time
from enum import StrEnum
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from immo_watch.utils.parsing import parse_number

# Listing fields a provider may declare as required
LISTING_FIELDS: Final = frozenset(
    {"title", "address", "price", "size", "rooms", "link", "image", "description", "published_at"}
)


def now_ms() -> int:
    """Current time as epoch milliseconds, the timestamp unit used throughout storage."""
    return int(time.time() * 1000)


class Coordinates(BaseModel):
    """A WGS84 point."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PriceHistoryEntry(BaseModel):
    """One observed price of a property at a point in time."""

    model_config = ConfigDict(frozen=True)

    date: int = Field(description="Epoch milliseconds")
    price: float


class DetailPatch(BaseModel):
    """Extra fields returned by a provider's detail endpoint.

    Every field is optional; only non-None values are merged into a listing.
    """

    model_config = ConfigDict(frozen=True)

    description: str | None = None
    rooms: float | None = None
    floor: int | None = None
    energy_efficiency_class: str | None = None
    heating_type: str | None = None
    construction_year: int | None = None
    published_at: int | None = None
    additional_images: tuple[str, ...] = ()
    documents: tuple[str, ...] = ()
    change_set: dict[str, Any] = Field(default_factory=dict)

    @field_validator("rooms", mode="before")
    @classmethod
    def parse_rooms(cls, v: object) -> float | None:
        return parse_number(v)


class Listing(BaseModel):
    """A normalized listing as produced by a provider.

    Numeric fields accept provider strings such as ``"1.250 €"`` or ``"70 m²"``;
    values that are missing or not positive become None.
    """

    model_config = ConfigDict(frozen=True)

    hash: str = Field(min_length=1, description="Provider-specific content hash")
    provider: str
    provider_listing_id: str | None = Field(
        default=None, description="Listing id on the source platform, used for detail lookups"
    )
    title: str | None = None
    address: str | None = None
    price: float | None = None
    size: float | None = None
    rooms: float | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    link: str | None = None
    image: str | None = None
    description: str | None = None
    published_at: int | None = None

    floor: int | None = None
    energy_efficiency_class: str | None = None
    heating_type: str | None = None
    construction_year: int | None = None
    additional_images: tuple[str, ...] = ()
    documents: tuple[str, ...] = ()
    local_images: tuple[str, ...] = ()
    local_documents: tuple[str, ...] = ()

    property_identity: str | None = None
    fuzzy_identity: str | None = None
    previous_version_id: int | None = None
    change_set: dict[str, Any] = Field(default_factory=dict)

    @field_validator("price", "size", "rooms", mode="before")
    @classmethod
    def parse_numeric(cls, v: object) -> float | None:
        """Parse German formatted numbers; non-positive values mean unknown."""
        return parse_number(v)

    @field_validator("address")
    @classmethod
    def strip_address(cls, v: str | None) -> str | None:
        """Collapse whitespace; an empty address is treated as missing."""
        if v is None:
            return None
        cleaned = " ".join(v.split())
        return cleaned or None

    @model_validator(mode="after")
    def check_coordinates(self) -> Self:
        """Ensure both lat and lon are present or both are absent."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude must be provided, or neither")
        return self

    @property
    def coordinates(self) -> Coordinates | None:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(lat=self.latitude, lng=self.longitude)

    @property
    def price_history(self) -> list[PriceHistoryEntry]:
        """Price history stored in ``change_set``, oldest first."""
        raw = self.change_set.get("priceHistory") or []
        return [PriceHistoryEntry.model_validate(entry) for entry in raw]

    def missing_fields(self, required: tuple[str, ...] | list[str]) -> list[str]:
        """Return the required field names that are unset or empty on this listing."""
        missing = []
        for name in required:
            value = getattr(self, name, None)
            if value is None or value == "":
                missing.append(name)
        return missing

    def with_details(self, patch: DetailPatch) -> Self:
        """Return a copy with all non-empty detail fields merged in."""
        update: dict[str, Any] = {}
        for name in (
            "description",
            "rooms",
            "floor",
            "energy_efficiency_class",
            "heating_type",
            "construction_year",
            "published_at",
        ):
            value = getattr(patch, name)
            if value is not None:
                update[name] = value
        if patch.additional_images:
            update["additional_images"] = patch.additional_images
        if patch.documents:
            update["documents"] = patch.documents
        if patch.change_set:
            update["change_set"] = {**self.change_set, **patch.change_set}
        return self.model_copy(update=update)


class StoredListing(Listing):
    """A listing as persisted, with surrogate key and lifecycle fields."""

    id: int
    job_id: str
    created_at: int
    is_active: bool = True
    is_superseded: bool = False
    manually_deleted: bool = False
    deactivated_at: int | None = None
    distance_to_destination: float | None = None

    @property
    def effective_date(self) -> int:
        """Date used for chain ordering: publication date when known, else insertion."""
        return self.published_at if self.published_at is not None else self.created_at


class ManualLink(BaseModel):
    """A user-created, undirected edge between two persisted listings.

    The pair is always stored with the lower id first so ``(a, b)`` and
    ``(b, a)`` describe the same row.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    listing_id_low: int
    listing_id_high: int
    created_by: str | None = None
    created_at: int

    @model_validator(mode="after")
    def check_order(self) -> Self:
        if self.listing_id_low >= self.listing_id_high:
            raise ValueError("listing_id_low must be lower than listing_id_high")
        return self

    def other_end(self, listing_id: int) -> int:
        """The listing on the opposite side of this link from ``listing_id``."""
        return self.listing_id_high if listing_id == self.listing_id_low else self.listing_id_low


class EdgeKind(StrEnum):
    """How two listings in a version graph are connected."""

    VERSION = "version"  # previous_version_id, source is the newer listing
    MANUAL = "manual"  # user-created link, source is the lower id


class VersionEdge(BaseModel):
    """An edge of the version graph as read from storage."""

    model_config = ConfigDict(frozen=True)

    source: int
    target: int
    kind: EdgeKind


class MediaPaths(BaseModel):
    """Local files produced by the media downloader."""

    model_config = ConfigDict(frozen=True)

    image_paths: tuple[str, ...] = ()
    doc_paths: tuple[str, ...] = ()


class HomeLocation(BaseModel):
    """The address distances are measured to."""

    model_config = ConfigDict(frozen=True)

    address: str | None = None
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ProviderConfig(BaseModel):
    """Per-job configuration of one listing source."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    url: str
    enabled: bool = True
    sort_param: str | None = Field(
        default=None, description="Query fragment such as 'sort=date_desc' added to the URL"
    )
    required_fields: tuple[str, ...] = ("title", "price", "link")
    items_path: str | None = Field(
        default=None, description="Dotted path to the list of items in the response body"
    )
    id_field: str = "id"
    field_map: dict[str, str] = Field(
        default_factory=dict, description="Listing field name -> dotted path in a raw item"
    )
    detail_url: str | None = Field(
        default=None, description="Detail endpoint template containing '{id}'"
    )
    page_param: str = "page"
    max_pages: int = Field(default=5, ge=1)

    @field_validator("required_fields")
    @classmethod
    def check_required_fields(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(v) - LISTING_FIELDS
        if unknown:
            raise ValueError(f"Unknown required fields: {sorted(unknown)}")
        return v


class JobConfig(BaseModel):
    """A saved search: which providers to poll and where to notify."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str | None = None
    enabled: bool = True
    providers: tuple[ProviderConfig, ...] = ()
    blacklist: tuple[str, ...] = Field(
        default=(), description="Terms that drop a listing when found in its title or description"
    )
    full_fetch: bool = Field(
        default=False, description="Fetch every page even when a page only holds known listings"
    )
    home: HomeLocation | None = None
