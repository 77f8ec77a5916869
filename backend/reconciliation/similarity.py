"""
String similarity for description matching.

Normalized Levenshtein similarity: (maxLen - editDistance) / maxLen on
lower-cased, trimmed strings. Identical strings score 1.0, empty vs
non-empty scores 0.0.

Bank and ledger descriptions often carry the same words in a different
order ("Payment from ABC Company" vs "ABC Company payment"), so
description_similarity also scores the token-sorted forms and keeps the
better of the two.
"""

from typing import Optional

from rapidfuzz.distance import Levenshtein


def normalize_text(value: Optional[str]) -> str:
    return " ".join((value or "").lower().split())


def levenshtein_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    left = normalize_text(a)
    right = normalize_text(b)

    max_len = max(len(left), len(right))
    if max_len == 0:
        return 1.0
    if not left or not right:
        return 0.0

    distance = Levenshtein.distance(left, right)
    return (max_len - distance) / max_len


def _sort_tokens(value: str) -> str:
    return " ".join(sorted(value.split()))


def description_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Similarity between two free-text descriptions.

    Max of the raw and token-sorted Levenshtein similarities.
    """
    left = normalize_text(a)
    right = normalize_text(b)

    raw = levenshtein_similarity(left, right)
    if raw == 1.0 or not left or not right:
        return raw

    return max(raw, levenshtein_similarity(_sort_tokens(left), _sort_tokens(right)))
