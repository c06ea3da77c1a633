from __future__ import annotations

import hashlib
from dataclasses import replace
from datetime import datetime, timezone

from loguru import logger

from app.config import settings
from app.research_core.models.interfaces import Evidence
from app.research_core.similarity import text_similarity
from app.tools import web_utils


SOURCE_TYPES_BY_DOMAIN = {
    "techcrunch.com": "news",
    "venturebeat.com": "news",
    "arstechnica.com": "news",
    "theverge.com": "news",
    "wired.com": "news",
    "reuters.com": "news",
    "bloomberg.com": "news",
    "wsj.com": "news",
    "nytimes.com": "news",
    "forbes.com": "news",
    "fortune.com": "news",
    "businessinsider.com": "news",
    "crunchbase.com": "database",
    "pitchbook.com": "database",
    "sec.gov": "regulatory",
    "fda.gov": "regulatory",
    "reddit.com": "forum",
    "news.ycombinator.com": "forum",
    "stackoverflow.com": "forum",
    "github.com": "code",
    "medium.com": "blog",
    "substack.com": "blog",
    "linkedin.com": "professional",
    "twitter.com": "social",
    "x.com": "social",
    "youtube.com": "video",
    "angellist.com": "startup",
    "wellfound.com": "startup",
    "producthunt.com": "product",
    "ycombinator.com": "accelerator",
    "techstars.com": "accelerator",
}

# Checked in order against the host when no table entry matches.
SOURCE_TYPE_FALLBACKS = (
    ("gov", "government"),
    ("edu", "academic"),
    ("blog", "blog"),
    ("news", "news"),
)

DEFAULT_SOURCE_TYPE = "website"

SOURCE_WEIGHTS = {
    "news": 1.0,
    "database": 0.9,
    "regulatory": 0.9,
    "academic": 0.8,
    "government": 0.8,
    "professional": 0.7,
    "startup": 0.7,
    "code": 0.6,
    "accelerator": 0.6,
    "product": 0.6,
    "blog": 0.5,
    "forum": 0.4,
    "social": 0.3,
    "video": 0.3,
    "website": 0.2,
    "unknown": 0.1,
}

MIN_SOURCE_WEIGHT = SOURCE_WEIGHTS["unknown"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_stable_id(url: str, title: str, published_at: datetime | None) -> str:
    """Deterministic 16-hex-char fingerprint of (url, title, published_at)."""
    published = _as_utc(published_at).strftime("%Y-%m-%dT%H:%M:%SZ") if published_at else ""
    digest = hashlib.sha256(f"{url}|{title}|{published}".encode("utf-8")).digest()
    return digest[:8].hex()


def infer_source_type(url: str) -> str:
    domain = web_utils.extract_domain(url)
    if not domain:
        return "unknown"

    source_type = SOURCE_TYPES_BY_DOMAIN.get(domain)
    if source_type:
        return source_type

    # Subdomains inherit their parent's category, longest suffix first.
    labels = domain.split(".")
    for start in range(1, len(labels) - 1):
        source_type = SOURCE_TYPES_BY_DOMAIN.get(".".join(labels[start:]))
        if source_type:
            return source_type

    for needle, fallback in SOURCE_TYPE_FALLBACKS:
        if needle in domain:
            return fallback
    return DEFAULT_SOURCE_TYPE


def score_evidence_quality(evidence: Evidence, *, now: datetime | None = None) -> float:
    """Source reputation + recency + content richness."""
    now = now or _utc_now()
    score = SOURCE_WEIGHTS.get(evidence.source_type, MIN_SOURCE_WEIGHT)

    if evidence.published_at is not None:
        days_since = (now - _as_utc(evidence.published_at)).total_seconds() / 86400
        if days_since <= 30:
            score += 0.5
        elif days_since <= 365:
            score += 0.3
        elif days_since <= 365 * 3:
            score += 0.1

    if len(evidence.title) > 10:
        score += 0.2
    if len(evidence.snippet) > 50:
        score += 0.2
    if len(evidence.url) < 100:
        score += 0.1

    return round(score, 4)


class EvidenceNormalizer:
    """Canonicalize, deduplicate, cluster and rank raw evidence.

    Stateless between calls; thresholds default to the configured values.
    """

    def __init__(
        self,
        *,
        title_similarity: float | None = None,
        snippet_similarity: float | None = None,
        same_domain_title_similarity: float | None = None,
        quality_threshold: float | None = None,
        max_text_chars: int | None = None,
    ):
        self.title_similarity = (
            settings.title_similarity_threshold if title_similarity is None else title_similarity
        )
        self.snippet_similarity = (
            settings.snippet_similarity_threshold
            if snippet_similarity is None
            else snippet_similarity
        )
        self.same_domain_title_similarity = (
            settings.same_domain_title_similarity_threshold
            if same_domain_title_similarity is None
            else same_domain_title_similarity
        )
        self.quality_threshold = (
            settings.quality_threshold if quality_threshold is None else quality_threshold
        )
        self.max_text_chars = settings.snippet_max_chars if max_text_chars is None else max_text_chars

    def normalize(self, raw: list[Evidence], *, now: datetime | None = None) -> list[Evidence]:
        now = now or _utc_now()
        normalized = [item for item in (self.normalize_item(ev) for ev in raw) if item is not None]
        unique = self.deduplicate_exact(normalized)
        representatives = self.cluster_near_duplicates(unique, now=now)
        ranked = self.rank(representatives, now=now)
        logger.debug(
            f"normalized evidence: raw={len(raw)} valid={len(normalized)} "
            f"unique={len(unique)} clustered={len(representatives)} kept={len(ranked)}"
        )
        return ranked

    def normalize_item(self, evidence: Evidence) -> Evidence | None:
        if not evidence.url or not evidence.title:
            return None

        canonical_url = web_utils.canonicalize_url(evidence.url)
        if canonical_url is None:
            return None

        title = web_utils.clean_content(evidence.title, max_length=self.max_text_chars)
        if not title:
            return None
        snippet = web_utils.clean_content(evidence.snippet, max_length=self.max_text_chars)

        return replace(
            evidence,
            id=generate_stable_id(canonical_url, title, evidence.published_at),
            url=canonical_url,
            title=title,
            snippet=snippet,
            source_type=evidence.source_type or infer_source_type(canonical_url),
        )

    @staticmethod
    def deduplicate_exact(evidence: list[Evidence]) -> list[Evidence]:
        """Collapse identical (url, title) pairs, keeping the latest published_at."""
        by_key: dict[tuple[str, str], Evidence] = {}
        for ev in evidence:
            key = (ev.url, ev.title)
            existing = by_key.get(key)
            if existing is None:
                by_key[key] = ev
            elif ev.published_at is not None and (
                existing.published_at is None
                or _as_utc(ev.published_at) > _as_utc(existing.published_at)
            ):
                by_key[key] = ev
        return list(by_key.values())

    def are_similar(self, left: Evidence, right: Evidence) -> bool:
        title_sim = text_similarity(left.title, right.title)
        if title_sim > self.title_similarity:
            return True

        if left.snippet and right.snippet:
            if text_similarity(left.snippet, right.snippet) > self.snippet_similarity:
                return True

        left_domain = web_utils.extract_domain(left.url)
        return (
            bool(left_domain)
            and left_domain == web_utils.extract_domain(right.url)
            and title_sim > self.same_domain_title_similarity
        )

    def cluster_near_duplicates(
        self,
        evidence: list[Evidence],
        *,
        now: datetime | None = None,
    ) -> list[Evidence]:
        clusters: list[list[Evidence]] = []
        for ev in evidence:
            for cluster in clusters:
                if any(self.are_similar(member, ev) for member in cluster):
                    cluster.append(ev)
                    break
            else:
                clusters.append([ev])

        now = now or _utc_now()
        # max() keeps the first of equally scored members.
        return [
            max(cluster, key=lambda ev: score_evidence_quality(ev, now=now))
            for cluster in clusters
        ]

    def rank(self, evidence: list[Evidence], *, now: datetime | None = None) -> list[Evidence]:
        now = now or _utc_now()
        scored = [(score_evidence_quality(ev, now=now), ev) for ev in evidence]
        kept = [(score, ev) for score, ev in scored if score > self.quality_threshold]
        kept.sort(key=lambda pair: pair[0], reverse=True)
        return [ev for _, ev in kept]


def normalize(raw: list[Evidence]) -> list[Evidence]:
    """Normalize with configured thresholds."""
    return EvidenceNormalizer().normalize(raw)
