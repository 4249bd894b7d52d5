"""Strict and fuzzy property identities.

A property identity is a short hash that stays the same when a property is
re-published. The strict identity covers address and exact size; the fuzzy
identity buckets several independent factors so small edits to a listing do
not change it.
"""

import hashlib
import math
import re
from collections import defaultdict
from collections.abc import Iterable
from typing import Final

from immo_watch.models import Listing
from immo_watch.utils.address import normalize_house_number, parse_address
from immo_watch.utils.geo import METERS_PER_DEGREE, haversine_distance, is_valid_coordinate
from immo_watch.utils.parsing import format_number

IDENTITY_LENGTH: Final = 16

# Fuzzy identity factors
MIN_FUZZY_FACTORS: Final = 4
GEO_CELL_METERS: Final = 30
SIZE_BUCKET: Final = 3
PRICE_BUCKET_RATIO: Final = 0.02
MIN_PRICE_BUCKET_WIDTH: Final = 10.0

# Pairwise predicate tolerances. Stricter than the similarity scorer's bands,
# which are meant for human review.
SAME_PROPERTY_SIZE_TOLERANCE: Final = 0.05
SAME_PROPERTY_PRICE_TOLERANCE: Final = 0.05
SAME_PROPERTY_ACCEPT_METERS: Final = 30
SAME_PROPERTY_REJECT_METERS: Final = 200

_NOISE_WORDS: Final = frozenset({"bei", "am", "im", "an", "der", "die", "das"})
_NON_WORD: Final = re.compile(r"[^\w\s]")


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:IDENTITY_LENGTH]


def extract_address_tokens(address: str | None) -> list[str]:
    """Sorted, normalized tokens of an address.

    Streets are normalized ("Musterstr." and "Musterstraße" both become
    "musterstrasse"), districts in parentheses and filler words are dropped.
    Sorting makes the result independent of the order the parts were written in.
    """
    parsed = parse_address(address)
    if not parsed.normalized:
        return []
    cleaned = _NON_WORD.sub(" ", parsed.normalized)
    return sorted(t for t in cleaned.split() if t not in _NOISE_WORDS)


def compute_property_identity(listing: Listing) -> str | None:
    """Strict identity: hash of the normalized address tokens and the exact size.

    Returns:
        16 hex characters, or None when the listing has no usable address.
    """
    tokens = extract_address_tokens(listing.address)
    if not tokens:
        return None
    size = format_number(listing.size) if listing.size is not None else ""
    return _digest(f"{'|'.join(tokens)}|{size}")


def _geo_cell(lat: float, lon: float) -> str:
    lat_step = GEO_CELL_METERS / METERS_PER_DEGREE
    lat_index = math.floor(lat / lat_step)
    # Longitude step from the cell's centre latitude so every point in a row
    # of cells uses the same grid
    center_lat = (lat_index + 0.5) * lat_step
    lon_step = GEO_CELL_METERS / (METERS_PER_DEGREE * math.cos(math.radians(center_lat)))
    lon_index = math.floor(lon / lon_step)
    return f"{lat_index}:{lon_index}"


def size_bucket(size: float | None) -> int | None:
    """Size rounded to the nearest multiple of three."""
    if size is None or size <= 0:
        return None
    return math.floor(size / SIZE_BUCKET + 0.5) * SIZE_BUCKET


def price_bucket(price: float | None) -> str | None:
    """Price band roughly 2% wide.

    Bands are logarithmic so their width grows with the price; below the point
    where 2% drops under the minimum width, fixed-width bands are used instead.
    """
    if price is None or price <= 0:
        return None
    if price * PRICE_BUCKET_RATIO < MIN_PRICE_BUCKET_WIDTH:
        return f"abs{math.floor(price / MIN_PRICE_BUCKET_WIDTH)}"
    return f"log{math.floor(math.log(price) / math.log1p(PRICE_BUCKET_RATIO))}"


def fuzzy_identity_factors(listing: Listing) -> list[str]:
    """The identifying factors available for a listing, as ``name:value`` tokens."""
    factors: list[str] = []
    parsed = parse_address(listing.address)

    if is_valid_coordinate(listing.latitude, listing.longitude):
        assert listing.latitude is not None and listing.longitude is not None
        factors.append(f"geo:{_geo_cell(listing.latitude, listing.longitude)}")
    if parsed.zip_code:
        factors.append(f"zip:{parsed.zip_code}")
    house_number = normalize_house_number(parsed.house_number)
    if house_number:
        factors.append(f"house:{house_number}")
    bucket = size_bucket(listing.size)
    if bucket is not None:
        factors.append(f"size:{bucket}")
    if listing.rooms is not None:
        factors.append(f"rooms:{format_number(listing.rooms)}")
    band = price_bucket(listing.price)
    if band is not None:
        factors.append(f"price:{band}")

    return sorted(factors)


def compute_fuzzy_identity(listing: Listing) -> str | None:
    """Fuzzy identity built from bucketed factors.

    Uses the geo cell (~30 m), zip code, house number, size bucket, exact
    room count and price band. Returns None when fewer than four of them are
    known: too little information to tell properties apart.
    """
    factors = fuzzy_identity_factors(listing)
    if len(factors) < MIN_FUZZY_FACTORS:
        return None
    return _digest("|".join(factors))


def group_by_fuzzy_identity(listings: Iterable[Listing]) -> dict[str, list[Listing]]:
    """Group listings by their ``fuzzy_identity``; listings without one are skipped."""
    groups: dict[str, list[Listing]] = defaultdict(list)
    for listing in listings:
        if listing.fuzzy_identity:
            groups[listing.fuzzy_identity].append(listing)
    return dict(groups)


def _relative_difference(a: float, b: float) -> float:
    return abs(a - b) / ((a + b) / 2)


def could_be_same_property(listing1: Listing, listing2: Listing) -> bool:
    """Conservative check whether two listings describe the same property.

    Every factor must agree: size and price within 5%, identical room count,
    no conflicting zip code or house number, and location. Within 30 m is a
    match and beyond 200 m is not; in between, and when coordinates are
    missing, the fuzzy identities must be equal. Missing size, rooms or price
    rejects the pair.
    """
    if listing1.hash == listing2.hash:
        return True

    if listing1.size is None or listing2.size is None:
        return False
    if _relative_difference(listing1.size, listing2.size) > SAME_PROPERTY_SIZE_TOLERANCE:
        return False

    if listing1.rooms is None or listing2.rooms is None or listing1.rooms != listing2.rooms:
        return False

    if listing1.price is None or listing2.price is None:
        return False
    if _relative_difference(listing1.price, listing2.price) > SAME_PROPERTY_PRICE_TOLERANCE:
        return False

    parsed1 = parse_address(listing1.address)
    parsed2 = parse_address(listing2.address)
    if parsed1.zip_code and parsed2.zip_code and parsed1.zip_code != parsed2.zip_code:
        return False
    house1 = normalize_house_number(parsed1.house_number)
    house2 = normalize_house_number(parsed2.house_number)
    if house1 and house2 and house1 != house2:
        return False

    fuzzy1 = listing1.fuzzy_identity or compute_fuzzy_identity(listing1)
    fuzzy2 = listing2.fuzzy_identity or compute_fuzzy_identity(listing2)
    same_fuzzy = fuzzy1 is not None and fuzzy1 == fuzzy2

    if is_valid_coordinate(listing1.latitude, listing1.longitude) and is_valid_coordinate(
        listing2.latitude, listing2.longitude
    ):
        assert listing1.latitude is not None and listing1.longitude is not None
        assert listing2.latitude is not None and listing2.longitude is not None
        distance = haversine_distance(
            listing1.latitude, listing1.longitude, listing2.latitude, listing2.longitude
        )
        if distance <= SAME_PROPERTY_ACCEPT_METERS:
            return True
        if distance > SAME_PROPERTY_REJECT_METERS:
            return False
        return same_fuzzy

    return same_fuzzy and bool(house1 and house2 and parsed1.zip_code and parsed2.zip_code)
