from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from tavily import AsyncTavilyClient

from app.config import settings
from app.research_core.models.interfaces import RawResult


def _parse_published_date(value: Any) -> datetime | None:
    """Tavily news results carry RFC 2822 or ISO dates."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def search(query: str, *, max_results: int = 10) -> list[RawResult]:
    """Execute a Tavily web search and return structured results."""
    if not settings.tavily_api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    response = await client.search(
        query=query,
        search_depth="advanced",
        max_results=max_results,
    )

    return [
        RawResult(
            title=r.get("title", "") or "",
            url=r.get("url", "") or "",
            content=r.get("content", "") or "",
            published_at=_parse_published_date(r.get("published_date")),
            score=float(r.get("score", 0.0) or 0.0),
        )
        for r in response.get("results", [])
        if isinstance(r, dict)
    ]
