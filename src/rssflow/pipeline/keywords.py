"""
Keyword extraction over feed item titles.

Pure and deterministic: the same texts always produce the same keywords,
so the extract_keywords activity can be retried freely.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "and", "is", "are", "in", "it", "to", "of", "a", "on", "for",
        "with", "by", "at", "that", "could", "says", "said", "can", "as",
        "but", "he", "him", "she", "her", "was", "be", "after", "before",
        "over", "from", "say", "will", "more", "his", "hers", "their", "them",
    }
)  # fmt: skip

MAX_KEYWORDS = 10

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize(token: str) -> str:
    """Lowercase a token and strip everything outside [a-z0-9]."""
    return _NON_ALNUM.sub("", token.lower())


def count_tokens(texts: Iterable[str]) -> dict[str, int]:
    """
    Count qualifying tokens across all texts.

    The returned dict preserves first-occurrence order, which is what
    breaks ties when ranking.
    """
    counts: dict[str, int] = {}
    for raw in " ".join(texts).split():
        word = normalize(raw)
        if word and word not in STOP_WORDS:
            counts[word] = counts.get(word, 0) + 1
    return counts


def extract_keywords(texts: Iterable[str], limit: int = MAX_KEYWORDS) -> list[str]:
    """
    Return up to `limit` most frequent keywords in `texts`.

    Ranking is by descending count; sorted() is stable, so equal counts
    keep the order in which the words first appeared.

    Example:
        >>> extract_keywords(["Cats are great", "Dogs are great too", "Cats win again"])
        ['cats', 'great', 'dogs', 'too', 'win', 'again']
    """
    counts = count_tokens(texts)
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:limit]]
