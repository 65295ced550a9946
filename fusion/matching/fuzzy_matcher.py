"""
Fuzzy string matching utilities for identity deduplication.

Uses Levenshtein distance by default to decide whether two attribute values
(names, emails, employee numbers) plausibly refer to the same person despite
typos or formatting differences. Jaro-Winkler and Dice coefficient scoring
are available for attributes where prefix agreement or token overlap is a
better signal.

Example matches:
- "Jon Smith" vs "John Smith"
- "jsmith@acme.com" vs "j.smith@acme.com"
"""

import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate the Levenshtein (edit) distance between two strings.

    The Levenshtein distance is the minimum number of single-character
    edits (insertions, deletions, substitutions) needed to transform
    one string into another.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance (0 = identical)
    """
    if len(s1) < len(s2):
        s1, s2 = s2, s1

    if not s2:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            current_row.append(
                min(
                    previous_row[j + 1] + 1,
                    current_row[j] + 1,
                    previous_row[j] + (c1 != c2),
                )
            )
        previous_row = current_row

    return previous_row[-1]


def similarity_ratio(s1: str, s2: str) -> float:
    """
    Levenshtein similarity between two strings in [0.0, 1.0].

    Two empty strings are identical (1.0); exactly one empty string is
    completely dissimilar (0.0).
    """
    if not s1 and not s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    return 1.0 - (distance / max(len(s1), len(s2)))


def jaro_winkler_similarity(s1: str, s2: str, prefix_scale: float = 0.1) -> float:
    """Jaro-Winkler similarity in [0.0, 1.0], boosting common prefixes."""
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    window = max(max(len(s1), len(s2)) // 2 - 1, 0)
    s1_matched = [False] * len(s1)
    s2_matched = [False] * len(s2)

    matches = 0
    for i, c1 in enumerate(s1):
        start = max(0, i - window)
        end = min(i + window + 1, len(s2))
        for j in range(start, end):
            if not s2_matched[j] and s2[j] == c1:
                s1_matched[i] = s2_matched[j] = True
                matches += 1
                break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i, c1 in enumerate(s1):
        if not s1_matched[i]:
            continue
        while not s2_matched[k]:
            k += 1
        if c1 != s2[k]:
            transpositions += 1
        k += 1

    jaro = (
        matches / len(s1)
        + matches / len(s2)
        + (matches - transpositions / 2) / matches
    ) / 3

    prefix = 0
    for c1, c2 in zip(s1[:4], s2[:4]):
        if c1 != c2:
            break
        prefix += 1

    return jaro + prefix * prefix_scale * (1 - jaro)


def _bigrams(text: str) -> List[str]:
    return [text[i:i + 2] for i in range(len(text) - 1)]


def dice_similarity(s1: str, s2: str) -> float:
    """Sorensen-Dice coefficient over character bigrams, in [0.0, 1.0]."""
    if s1 == s2:
        return 1.0
    if len(s1) < 2 or len(s2) < 2:
        return 0.0

    remaining = _bigrams(s2)
    overlap = 0
    first = _bigrams(s1)
    for gram in first:
        if gram in remaining:
            remaining.remove(gram)
            overlap += 1

    return 2.0 * overlap / (len(first) + len(s2) - 1)


ALGORITHMS: Dict[str, Callable[[str, str], float]] = {
    "levenshtein": similarity_ratio,
    "jaro-winkler": jaro_winkler_similarity,
    "dice": dice_similarity,
}


class SimilarityScorer:
    """
    Pure similarity scorer for attribute values.

    score() returns [0, 1]; score_percent() returns the same value on the
    [0, 100] scale used by merging thresholds. Callers are expected to pass
    already-normalized strings.
    """

    DEFAULT_ALGORITHM = "levenshtein"

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM):
        if algorithm not in ALGORITHMS:
            raise ValueError(
                f"Unknown similarity algorithm '{algorithm}'. "
                f"Available: {', '.join(sorted(ALGORITHMS))}"
            )
        self.algorithm = algorithm
        self._fn = ALGORITHMS[algorithm]

    def score(self, a: str, b: str) -> float:
        """
        Compute similarity between two strings.

        Args:
            a: First value
            b: Second value

        Returns:
            Similarity in [0.0, 1.0]

        Raises:
            TypeError: If either value is not a string
        """
        if not isinstance(a, str) or not isinstance(b, str):
            raise TypeError(
                f"SimilarityScorer.score expects strings, got "
                f"{type(a).__name__} and {type(b).__name__}"
            )
        return max(0.0, min(1.0, self._fn(a, b)))

    def score_percent(self, a: str, b: str) -> float:
        """Similarity on the 0-100 scale used by merging thresholds."""
        return self.score(a, b) * 100
