from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx

from app.config import settings
from app.models.schemas import ApproxLocation
from app.research_core.models.interfaces import RawResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


def _parse_page_age(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def search(
    query: str,
    *,
    max_results: int = 10,
    location: ApproxLocation | None = None,
) -> list[RawResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": max_results,
    }
    if location and location.country and len(location.country.strip()) == 2:
        params["country"] = location.country.strip().lower()

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[RawResult] = []
    for idx, item in enumerate(raw_results):
        if not isinstance(item, dict):
            continue
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        content = description.strip() or " ".join(snippets).strip()
        # Brave does not expose a direct relevance score in this response shape.
        score = max(0.0, 1.0 - (idx / total))
        mapped.append(
            RawResult(
                title=item.get("title", "") or "",
                url=item.get("url", "") or "",
                content=content,
                published_at=_parse_page_age(item.get("page_age")),
                score=score,
            )
        )
    return mapped
