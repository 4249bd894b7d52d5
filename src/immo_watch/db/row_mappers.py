"""Row <-> model mapping for the listings tables."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Final

import aiosqlite

from immo_watch.models import Listing, ManualLink, StoredListing

# Columns present since the first schema version
BASE_COLUMNS: Final = (
    "hash",
    "job_id",
    "provider",
    "provider_listing_id",
    "title",
    "address",
    "price",
    "size",
    "link",
    "image_url",
    "description",
    "latitude",
    "longitude",
    "created_at",
)

# Columns added by migrations: (name, type, default)
EXTENDED_COLUMNS: Final[tuple[tuple[str, str, str | None], ...]] = (
    ("rooms", "REAL", None),
    ("published_at", "INTEGER", None),
    ("floor", "INTEGER", None),
    ("energy_efficiency_class", "TEXT", None),
    ("heating_type", "TEXT", None),
    ("construction_year", "INTEGER", None),
    ("additional_images", "TEXT", None),
    ("documents", "TEXT", None),
    ("local_images", "TEXT", None),
    ("local_documents", "TEXT", None),
    ("property_identity", "TEXT", None),
    ("fuzzy_identity", "TEXT", None),
    ("previous_version_id", "INTEGER", None),
    ("is_superseded", "INTEGER NOT NULL", "0"),
    ("manually_deleted", "INTEGER NOT NULL", "0"),
    ("change_set", "TEXT", None),
)

_JSON_LIST_COLUMNS: Final = ("additional_images", "documents", "local_images", "local_documents")


def _json_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(json.loads(value))


def row_to_listing(row: aiosqlite.Row | Mapping[str, Any]) -> StoredListing:
    """Convert a ``listings`` row to a StoredListing.

    Works on rows of a not-yet-migrated table too; missing columns take their
    model defaults.
    """
    data: dict[str, Any] = dict(row)
    data["image"] = data.pop("image_url", None)
    for column in _JSON_LIST_COLUMNS:
        if column in data:
            data[column] = _json_list(data[column])
    if "change_set" in data:
        data["change_set"] = json.loads(data["change_set"]) if data["change_set"] else {}
    for flag in ("is_active", "is_superseded", "manually_deleted"):
        if flag in data and data[flag] is not None:
            data[flag] = bool(data[flag])
    return StoredListing.model_validate(data)


def row_to_manual_link(row: aiosqlite.Row) -> ManualLink:
    return ManualLink.model_validate(dict(row))


def build_insert_values(
    job_id: str, listing: Listing, created_at: int, *, extended: bool
) -> tuple[list[str], list[Any]]:
    """Column names and values for inserting a listing.

    Args:
        job_id: Job the listing was found for.
        listing: Normalized listing, with identity fields set when known.
        created_at: Insertion time in epoch milliseconds.
        extended: Whether the migrated columns exist.

    Returns:
        Tuple of (columns, values) in matching order.
    """
    columns = list(BASE_COLUMNS)
    values: list[Any] = [
        listing.hash,
        job_id,
        listing.provider,
        listing.provider_listing_id,
        listing.title,
        listing.address,
        listing.price,
        listing.size,
        listing.link,
        listing.image,
        listing.description,
        listing.latitude,
        listing.longitude,
        created_at,
    ]
    if not extended:
        return columns, values

    extra: dict[str, Any] = {
        "rooms": listing.rooms,
        "published_at": listing.published_at,
        "floor": listing.floor,
        "energy_efficiency_class": listing.energy_efficiency_class,
        "heating_type": listing.heating_type,
        "construction_year": listing.construction_year,
        "additional_images": json.dumps(list(listing.additional_images)),
        "documents": json.dumps(list(listing.documents)),
        "local_images": json.dumps(list(listing.local_images)),
        "local_documents": json.dumps(list(listing.local_documents)),
        "property_identity": listing.property_identity,
        "fuzzy_identity": listing.fuzzy_identity,
        "previous_version_id": listing.previous_version_id,
        "change_set": json.dumps(listing.change_set) if listing.change_set else None,
    }
    columns.extend(extra)
    values.extend(extra.values())
    return columns, values
