"""Weighted multi-factor similarity between two listings.

Used to suggest manual links between listings that describe the same property
on different platforms or after a re-publication.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from immo_watch.models import Listing
from immo_watch.utils.address import compare_addresses
from immo_watch.utils.geo import calculate_geo_score
from immo_watch.utils.parsing import round_half_up

WEIGHT_ADDRESS: Final = 40
WEIGHT_SIZE: Final = 20
WEIGHT_GEO: Final = 20
WEIGHT_ROOMS: Final = 10
WEIGHT_PRICE: Final = 10

# (max relative difference, share of the weight, match label), checked in order
SIZE_BANDS: Final = ((0.05, 1.0, "exact"), (0.10, 0.8, "close"), (0.15, 0.5, "approximate"))
PRICE_BANDS: Final = ((0.05, 1.0, "exact"), (0.10, 0.8, "close"), (0.20, 0.5, "approximate"))
# Rooms compare by absolute difference
ROOM_BANDS: Final = ((0.0, 1.0, "exact"), (0.5, 0.8, "close"), (1.0, 0.5, "approximate"))

THRESHOLD_HIGH: Final = 80
THRESHOLD_MEDIUM: Final = 60
THRESHOLD_LOW: Final = 40

MIN_FACTORS_FOR_HIGH: Final = 3
STRONG_GEO_METERS: Final = 50
STRONG_ADDRESS_SCORE: Final = 80


class Confidence(Enum):
    """How sure a similarity score is about two listings being one property."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class FactorScore:
    """Points one factor contributed, plus what it compared.

    ``available`` is False when either listing lacks the data; such factors
    contribute no points and do not count towards confidence.
    """

    points: int
    available: bool
    match: str = "none"
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def missing(cls, what: str) -> "FactorScore":
        return cls(points=0, available=False, reason=f"Missing {what} data")

    def to_dict(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "available": self.available,
            "match": self.match,
            "reason": self.reason,
            **self.details,
        }


@dataclass(frozen=True)
class SimilarityResult:
    """Overall score (0-100) with its per-factor breakdown."""

    score: int
    confidence: Confidence
    factors: dict[str, FactorScore]
    recommendation: str

    @property
    def available_factors(self) -> int:
        return sum(1 for factor in self.factors.values() if factor.available)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging and the CLI."""
        return {
            "score": self.score,
            "confidence": self.confidence.value,
            "recommendation": self.recommendation,
            "factors": {name: factor.to_dict() for name, factor in self.factors.items()},
        }


@dataclass(frozen=True)
class SimilarityMatch:
    listing: Listing
    similarity: SimilarityResult


def _banded_score(
    difference: float, bands: tuple[tuple[float, float, str], ...], weight: int
) -> tuple[int, str]:
    for max_difference, share, label in bands:
        if difference <= max_difference:
            return round_half_up(weight * share), label
    return 0, "none"


def _relative_difference(a: float, b: float) -> float:
    return abs(a - b) / ((a + b) / 2)


def _address_factor(listing1: Listing, listing2: Listing) -> FactorScore:
    if not listing1.address or not listing2.address:
        return FactorScore.missing("address")
    comparison = compare_addresses(listing1.address, listing2.address)
    return FactorScore(
        points=round_half_up(comparison.score / 100 * WEIGHT_ADDRESS),
        available=True,
        match="exact" if comparison.score == 100 else ("partial" if comparison.score else "none"),
        details={"score": comparison.score, **comparison.details},
    )


def _relative_factor(
    name: str,
    value1: float | None,
    value2: float | None,
    bands: tuple[tuple[float, float, str], ...],
    weight: int,
) -> FactorScore:
    if value1 is None or value2 is None:
        return FactorScore.missing(name)
    difference = _relative_difference(value1, value2)
    points, match = _banded_score(difference, bands, weight)
    return FactorScore(
        points=points,
        available=True,
        match=match,
        details={
            f"{name}1": value1,
            f"{name}2": value2,
            "percent_diff": round_half_up(difference * 100),
        },
    )


def _geo_factor(listing1: Listing, listing2: Listing) -> FactorScore:
    geo = calculate_geo_score(
        listing1.latitude, listing1.longitude, listing2.latitude, listing2.longitude
    )
    return FactorScore(
        points=geo.score,
        available=geo.distance is not None,
        match=geo.confidence,
        reason=geo.reason,
        details={"distance": geo.distance},
    )


def _rooms_factor(listing1: Listing, listing2: Listing) -> FactorScore:
    if listing1.rooms is None or listing2.rooms is None:
        return FactorScore.missing("room")
    difference = abs(listing1.rooms - listing2.rooms)
    points, match = _banded_score(difference, ROOM_BANDS, WEIGHT_ROOMS)
    return FactorScore(
        points=points,
        available=True,
        match=match,
        details={"rooms1": listing1.rooms, "rooms2": listing2.rooms, "difference": difference},
    )


def _confidence(score: int, factors: dict[str, FactorScore]) -> Confidence:
    available = sum(1 for factor in factors.values() if factor.available)
    if available < MIN_FACTORS_FOR_HIGH:
        return Confidence.MEDIUM if score >= THRESHOLD_MEDIUM else Confidence.LOW

    geo = factors["geo"]
    distance = geo.details.get("distance")
    strong_geo = geo.available and distance is not None and distance <= STRONG_GEO_METERS
    address = factors["address"]
    strong_address = address.available and address.details["score"] >= STRONG_ADDRESS_SCORE
    if strong_geo and strong_address and score >= THRESHOLD_MEDIUM:
        return Confidence.HIGH

    if score >= THRESHOLD_HIGH:
        return Confidence.HIGH
    if score >= THRESHOLD_MEDIUM:
        return Confidence.MEDIUM
    if score >= THRESHOLD_LOW:
        return Confidence.LOW
    return Confidence.NONE


def _recommendation(score: int, confidence: Confidence) -> str:
    if confidence is Confidence.HIGH and score >= 80:
        return "Very likely the same property. Auto-linking recommended."
    if confidence is Confidence.HIGH or (confidence is Confidence.MEDIUM and score >= 70):
        return "Likely the same property. Manual review recommended."
    if confidence is Confidence.MEDIUM and score >= 50:
        return "Possibly the same property. User verification needed."
    if score >= 40:
        return "Some similarities detected. Manual comparison advised."
    return "Unlikely to be the same property."


def compute_similarity(listing1: Listing, listing2: Listing) -> SimilarityResult:
    """Score how likely two listings describe the same property.

    Address 40, size 20, geo 20, rooms 10, price 10 points. Missing data on
    either side scores 0 for that factor; the function never raises on
    incomplete listings.

    Args:
        listing1: First listing.
        listing2: Second listing.

    Returns:
        SimilarityResult with score, confidence, factor breakdown and a
        human-readable recommendation.
    """
    factors = {
        "address": _address_factor(listing1, listing2),
        "size": _relative_factor("size", listing1.size, listing2.size, SIZE_BANDS, WEIGHT_SIZE),
        "geo": _geo_factor(listing1, listing2),
        "rooms": _rooms_factor(listing1, listing2),
        "price": _relative_factor(
            "price", listing1.price, listing2.price, PRICE_BANDS, WEIGHT_PRICE
        ),
    }
    score = sum(factor.points for factor in factors.values())
    confidence = _confidence(score, factors)
    return SimilarityResult(
        score=score,
        confidence=confidence,
        factors=factors,
        recommendation=_recommendation(score, confidence),
    )


def _is_same_listing(target: Listing, candidate: Listing) -> bool:
    if candidate.hash == target.hash:
        return True
    target_id = getattr(target, "id", None)
    return target_id is not None and getattr(candidate, "id", None) == target_id


def find_similar_listings(
    target: Listing,
    candidates: Iterable[Listing],
    *,
    min_score: int = 50,
    max_results: int = 10,
) -> list[SimilarityMatch]:
    """Rank candidates by similarity to ``target``, best first.

    The target itself (same id or hash) is skipped, as is every candidate
    scoring below ``min_score``.
    """
    matches = [
        SimilarityMatch(listing=candidate, similarity=compute_similarity(target, candidate))
        for candidate in candidates
        if not _is_same_listing(target, candidate)
    ]
    matches = [m for m in matches if m.similarity.score >= min_score]
    matches.sort(key=lambda m: m.similarity.score, reverse=True)
    return matches[:max_results]
