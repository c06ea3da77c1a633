"""Token-level similarity shared by query planning and evidence clustering."""

from __future__ import annotations

import re
from collections.abc import Iterable

_TOKEN_RE = re.compile(r"[a-z0-9]+")

# Evidence clustering keeps auxiliary verbs; only articles, conjunctions and
# short prepositions are ignored.
EVIDENCE_STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to",
        "for", "of", "with", "by",
    }
)

# Query planning also drops auxiliary verbs.
STOPWORDS = EVIDENCE_STOPWORDS | frozenset(
    {
        "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should",
    }
)


def word_tokens(text: str) -> list[str]:
    """Lowercased alphanumeric runs, in order."""
    return _TOKEN_RE.findall(text.lower())


def content_tokens(text: str, stopwords: frozenset[str] = EVIDENCE_STOPWORDS) -> list[str]:
    """Word tokens longer than two characters, minus stopwords."""
    return [t for t in word_tokens(text) if len(t) > 2 and t not in stopwords]


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    set_left = set(left)
    set_right = set(right)
    union = len(set_left | set_right)
    if union == 0:
        return 0.0
    return len(set_left & set_right) / union


def text_similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return jaccard(content_tokens(left), content_tokens(right))
