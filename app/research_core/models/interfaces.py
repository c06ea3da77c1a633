from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal


Intent = Literal["competitors", "funding", "regulation", "postmortems", "market", "problem"]

LOWEST_PRIORITY = 3


def clamp_priority(priority: int) -> int:
    if priority < 1 or priority > LOWEST_PRIORITY:
        return LOWEST_PRIORITY
    return priority


@dataclass(frozen=True, slots=True)
class SearchQuery:
    text: str
    intent: Intent
    priority: int = 1


@dataclass(slots=True)
class RawResult:
    url: str
    title: str
    content: str
    published_at: datetime | None = None
    score: float = 0.0


@dataclass(frozen=True, slots=True)
class Evidence:
    id: str
    url: str
    title: str
    snippet: str
    retrieved_at: datetime
    source_type: str = ""
    published_at: datetime | None = None


@dataclass(slots=True)
class CacheEntry:
    fingerprint: str
    key: str
    payload: bytes
    created_at: datetime
    ttl_seconds: int

    def is_expired(self, now: datetime) -> bool:
        return now - self.created_at > timedelta(seconds=self.ttl_seconds)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def evidence_to_dict(evidence: Evidence) -> dict[str, Any]:
    return {
        "id": evidence.id,
        "url": evidence.url,
        "title": evidence.title,
        "snippet": evidence.snippet,
        "published_at": evidence.published_at.isoformat() if evidence.published_at else None,
        "retrieved_at": evidence.retrieved_at.isoformat(),
        "source_type": evidence.source_type,
    }


def evidence_from_dict(data: dict[str, Any]) -> Evidence:
    """Rebuild an Evidence record from its JSON form.

    Raises ValueError when a required field is missing, so a corrupt cache
    payload is reported instead of producing half-empty records.
    """
    for field_name in ("id", "url", "title", "retrieved_at"):
        if not data.get(field_name):
            raise ValueError(f"evidence payload missing {field_name!r}")
    retrieved_at = _parse_datetime(data["retrieved_at"])
    if retrieved_at is None:
        raise ValueError(f"invalid retrieved_at: {data['retrieved_at']!r}")
    return Evidence(
        id=str(data["id"]),
        url=str(data["url"]),
        title=str(data["title"]),
        snippet=str(data.get("snippet") or ""),
        published_at=_parse_datetime(data.get("published_at")),
        retrieved_at=retrieved_at,
        source_type=str(data.get("source_type") or ""),
    )
