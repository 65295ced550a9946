"""Similarity scoring for identity matching."""

from fusion.matching.fuzzy_matcher import (
    SimilarityScorer,
    levenshtein_distance,
    similarity_ratio,
)

__all__ = [
    "SimilarityScorer",
    "levenshtein_distance",
    "similarity_ratio",
]
