"""Great-circle distance and proximity scoring."""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final, TypeVar

from immo_watch.models import Listing

EARTH_RADIUS_METERS: Final = 6_371_000

# Metres per degree of latitude (and of longitude at the equator)
METERS_PER_DEGREE: Final = 111_320

# (max distance in metres, points), checked in order
PROXIMITY_THRESHOLDS: Final[tuple[tuple[float, int], ...]] = (
    (30, 20),
    (50, 15),
    (100, 10),
    (200, 5),
)

HIGH_CONFIDENCE_METERS: Final = 50

L = TypeVar("L", bound=Listing)


@dataclass(frozen=True)
class GeoScore:
    """Proximity points for two coordinates.

    ``distance`` is None when either coordinate is missing or invalid.
    """

    score: int
    distance: float | None
    confidence: str
    reason: str


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two coordinates in meters.

    Args:
        lat1, lon1: First coordinate.
        lat2, lon2: Second coordinate.

    Returns:
        Distance in meters, rounded to 0.1 m.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_METERS * c, 1)


def is_valid_coordinate(lat: float | None, lon: float | None) -> bool:
    """Whether a coordinate pair is usable.

    Missing values, NaN, out-of-range values and exactly (0, 0) are rejected;
    the latter is what providers send when they have no location.
    """
    if lat is None or lon is None:
        return False
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, int | float) or not isinstance(lon, int | float):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        return False
    return not (lat == 0 and lon == 0)


def calculate_geo_score(
    lat1: float | None, lon1: float | None, lat2: float | None, lon2: float | None
) -> GeoScore:
    """Map the distance between two points to proximity points.

    <=30 m: 20, <=50 m: 15, <=100 m: 10, <=200 m: 5, farther: 0.
    """
    if not is_valid_coordinate(lat1, lon1) or not is_valid_coordinate(lat2, lon2):
        return GeoScore(score=0, distance=None, confidence="none", reason="Missing coordinates")

    assert lat1 is not None and lon1 is not None and lat2 is not None and lon2 is not None
    distance = haversine_distance(lat1, lon1, lat2, lon2)

    for max_distance, points in PROXIMITY_THRESHOLDS:
        if distance <= max_distance:
            return GeoScore(
                score=points,
                distance=distance,
                confidence="high" if distance <= HIGH_CONFIDENCE_METERS else "medium",
                reason=f"Within {max_distance}m",
            )

    return GeoScore(
        score=0,
        distance=distance,
        confidence="low",
        reason=f"Distance {round(distance)}m exceeds threshold",
    )


def create_bounding_box(lat: float, lon: float, radius_meters: float) -> BoundingBox:
    """Approximate square around a point, for cheap pre-filtering before haversine."""
    lat_delta = radius_meters / METERS_PER_DEGREE
    lon_delta = radius_meters / (METERS_PER_DEGREE * math.cos(math.radians(lat)))
    return BoundingBox(
        min_lat=lat - lat_delta,
        max_lat=lat + lat_delta,
        min_lon=lon - lon_delta,
        max_lon=lon + lon_delta,
    )


def find_listings_within_radius(
    listings: Iterable[L], center_lat: float, center_lon: float, radius_meters: float
) -> list[tuple[L, float]]:
    """Listings within ``radius_meters`` of a point, closest first.

    Returns:
        (listing, distance in metres) pairs sorted by distance.
    """
    if not is_valid_coordinate(center_lat, center_lon):
        return []

    # Padded so the box always covers the whole circle
    box = create_bounding_box(center_lat, center_lon, radius_meters * 1.01)
    results: list[tuple[L, float]] = []
    for listing in listings:
        lat, lon = listing.latitude, listing.longitude
        if not is_valid_coordinate(lat, lon):
            continue
        assert lat is not None and lon is not None
        if not box.contains(lat, lon):
            continue
        distance = haversine_distance(center_lat, center_lon, lat, lon)
        if distance <= radius_meters:
            results.append((listing, distance))

    results.sort(key=lambda pair: pair[1])
    return results
