"""Listing similarity scoring and cross-platform duplicate filtering."""

from immo_watch.filters.similarity import (
    Confidence,
    FactorScore,
    SimilarityMatch,
    SimilarityResult,
    compute_similarity,
    find_similar_listings,
)
from immo_watch.filters.similarity_cache import SimilarityCache

__all__ = [
    "Confidence",
    "FactorScore",
    "SimilarityCache",
    "SimilarityMatch",
    "SimilarityResult",
    "compute_similarity",
    "find_similar_listings",
]
