from __future__ import annotations

from dataclasses import dataclass

from app.config import settings
from app.models.schemas import ApproxLocation
from app.research_core.models.interfaces import RawResult
from app.tools import brave_search, tavily_search


@dataclass
class SearchResponse:
    results: list[RawResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


def localize_query(query: str, location: ApproxLocation | None) -> str:
    """Append " in <region>, <country>" when a location is known."""
    if location is None:
        return query
    where = location.describe()
    return f"{query} in {where}" if where else query


async def search(
    query: str,
    *,
    location: ApproxLocation | None = None,
    max_results: int | None = None,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily
    max_results = max_results or settings.search_max_results_per_query
    localized = localize_query(query, location)

    if provider == "tavily":
        results = await tavily_search.search(query=localized, max_results=max_results)
        return SearchResponse(results=results, provider="tavily")

    if provider == "brave":
        try:
            results = await brave_search.search(
                query=localized,
                max_results=max_results,
                location=location,
            )
            if results or not use_fallback:
                return SearchResponse(results=results, provider="brave")

            fallback_results = await tavily_search.search(
                query=localized,
                max_results=max_results,
            )
            return SearchResponse(
                results=fallback_results,
                provider="tavily",
                fallback_from="brave",
                fallback_reason="brave returned zero results",
            )
        except Exception as e:
            if not use_fallback:
                raise
            fallback_results = await tavily_search.search(
                query=localized,
                max_results=max_results,
            )
            return SearchResponse(
                results=fallback_results,
                provider="tavily",
                fallback_from="brave",
                fallback_reason=str(e),
            )

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")
