from __future__ import annotations

import re
from itertools import zip_longest

from loguru import logger

from app.config import settings
from app.models.schemas import IdeaInput
from app.research_core.models.interfaces import Intent, SearchQuery
from app.research_core.similarity import STOPWORDS, content_tokens, jaccard, word_tokens


# (intent, priority, number of key terms expanded, templates)
INTENT_TEMPLATES: tuple[tuple[Intent, int, int, tuple[str, ...]], ...] = (
    (
        "competitors",
        1,
        3,
        ("{} competitors", "{} alternative", "{} similar companies", "companies like {}"),
    ),
    (
        "funding",
        2,
        2,
        ("{} startup funding", "{} series A", "{} investment", "{} venture capital"),
    ),
    (
        "regulation",
        2,
        2,
        ("{} regulation", "{} compliance", "{} legal requirements", "{} government rules"),
    ),
    (
        "postmortems",
        3,
        2,
        ("{} startup failed", "{} company shut down", "{} startup postmortem", "why {} failed"),
    ),
    (
        "market",
        1,
        2,
        ("{} market size", "{} industry trends", "{} market research", "{} TAM"),
    ),
    (
        "problem",
        1,
        2,
        ("{} problems", "{} pain points", "users complain {}", "{} frustrations"),
    ),
)

_SOURCE_TOKEN_RE = re.compile(r"[A-Za-z0-9]+")


def normalize_text(text: str) -> str:
    """Lowercase, strip punctuation, drop stopwords and tokens of two chars or less."""
    return " ".join(content_tokens(text, STOPWORDS))


def extract_key_terms(*texts: str) -> list[str]:
    """Tokens of length >= 5, or title-cased in the source, in first-seen order."""
    terms: list[str] = []
    seen: set[str] = set()
    for text in texts:
        significant = set(normalize_text(text or "").split())
        for token in _SOURCE_TOKEN_RE.findall(text or ""):
            lowered = token.lower()
            if lowered in seen or lowered not in significant:
                continue
            if len(lowered) >= 5 or token[0].isupper():
                terms.append(lowered)
                seen.add(lowered)
    return terms


def _interleave(groups: list[list[SearchQuery]]) -> list[SearchQuery]:
    return [q for row in zip_longest(*groups) for q in row if q is not None]


class QueryPlanner:
    """Turns an idea into a bounded, deduplicated list of prioritized queries."""

    def __init__(
        self,
        max_queries: int | None = None,
        *,
        similarity_threshold: float | None = None,
    ):
        self.max_queries = settings.max_queries if max_queries is None else max_queries
        self.similarity_threshold = (
            settings.query_similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )

    def plan(self, idea: IdeaInput) -> list[SearchQuery]:
        key_terms = extract_key_terms(idea.title, idea.one_liner)
        if key_terms:
            candidates = _interleave(
                [self._expand(intent, key_terms, idea) for intent, *_ in INTENT_TEMPLATES]
            )
        else:
            candidates = self._fallback_queries(idea)

        queries = self.deduplicate(candidates)[: max(self.max_queries, 0)]
        logger.debug(
            f"planned {len(queries)} queries for {idea.title!r} "
            f"(key_terms={key_terms[:3]}, candidates={len(candidates)})"
        )
        return queries

    def _expand(self, intent: Intent, key_terms: list[str], idea: IdeaInput) -> list[SearchQuery]:
        _, priority, term_count, templates = next(t for t in INTENT_TEMPLATES if t[0] == intent)
        queries = [
            SearchQuery(text=template.format(term), intent=intent, priority=priority)
            for term in key_terms[:term_count]
            for template in templates
        ]
        if intent == "competitors" and idea.title.strip():
            queries.append(
                SearchQuery(
                    text=f'"{idea.title.strip()}" competitors',
                    intent=intent,
                    priority=priority,
                )
            )
        return queries

    @staticmethod
    def _fallback_queries(idea: IdeaInput) -> list[SearchQuery]:
        title = " ".join(idea.title.split())
        one_liner = " ".join(idea.one_liner.split())
        subject = title or one_liner
        if not subject:
            return []

        queries = [SearchQuery(text=f"{subject} competitors", intent="competitors", priority=1)]
        if one_liner and one_liner != subject:
            queries.append(SearchQuery(text=one_liner, intent="problem", priority=1))
        if idea.category and idea.category.strip():
            queries.append(
                SearchQuery(
                    text=f"{idea.category.strip()} market size",
                    intent="market",
                    priority=1,
                )
            )
        else:
            queries.append(SearchQuery(text=f"{subject} market", intent="market", priority=1))
        queries.append(SearchQuery(text=f"{subject} startup funding", intent="funding", priority=2))
        return queries

    def deduplicate(self, queries: list[SearchQuery]) -> list[SearchQuery]:
        """Drop queries whose token set is too close to an already accepted one."""
        accepted: list[SearchQuery] = []
        accepted_tokens: list[list[str]] = []
        for query in queries:
            tokens = word_tokens(query.text)
            if any(jaccard(tokens, prior) > self.similarity_threshold for prior in accepted_tokens):
                continue
            accepted.append(query)
            accepted_tokens.append(tokens)
        return accepted
