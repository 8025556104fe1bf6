"""
Text normalisation and bigram similarity shared by dedup and reconciliation.
"""

import re
from typing import Optional

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_WHITESPACE = re.compile(r"\s+")


def normalize_reference(value: Optional[str]) -> str:
    """Uppercase alphanumerics only: 'inv/2025-007' -> 'INV2025007'."""
    return _NON_ALNUM.sub("", (value or "").upper())


def normalize_text(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip().lower())


def bigrams(value: str) -> set[str]:
    if len(value) < 2:
        return {value} if value else set()
    return {value[i:i + 2] for i in range(len(value) - 1)}


def bigram_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Jaccard coefficient of lowercase character bigrams, scaled to 0-100.
    Two empty strings are identical (100); one empty string matches nothing (0).
    """
    left, right = normalize_text(a), normalize_text(b)
    if not left and not right:
        return 100.0
    if not left or not right:
        return 0.0
    left_set, right_set = bigrams(left), bigrams(right)
    union = left_set | right_set
    return 100.0 * len(left_set & right_set) / len(union)
