"""Title normalization and similarity helpers."""

from __future__ import annotations

import re

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")

SIMILARITY_MIN_WORD_LENGTH = 3
CANDIDATE_MIN_WORD_LENGTH = 4


def normalize_title(value: str) -> str:
    text = _PUNCTUATION_RE.sub("", (value or "").lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def title_words(value: str, *, min_length: int = SIMILARITY_MIN_WORD_LENGTH) -> set[str]:
    return {word for word in normalize_title(value).split(" ") if len(word) >= min_length}


def candidate_keywords(value: str) -> list[str]:
    """Distinct words of a normalized title long enough to narrow a LIKE search."""
    words = [
        word
        for word in normalize_title(value).split(" ")
        if len(word) >= CANDIDATE_MIN_WORD_LENGTH
    ]
    return list(dict.fromkeys(words))


def title_similarity(left: str, right: str) -> float:
    """Jaccard index over the word sets of two titles."""
    left_words = title_words(left)
    right_words = title_words(right)
    union = left_words | right_words
    if not union:
        return 0.0
    return len(left_words & right_words) / len(union)
