from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.config import settings
from app.models.schemas import ApproxLocation
from app.research_core.cache.multilevel import EvidenceCache, build_evidence_cache
from app.research_core.evidence.normalizer import generate_stable_id, infer_source_type
from app.research_core.models.interfaces import (
    LOWEST_PRIORITY,
    Evidence,
    RawResult,
    SearchQuery,
    clamp_priority,
)
from app.services.logger import log_cache_operation, log_event, log_search_call
from app.tools import search_provider
from app.tools.rate_limiter import TokenBucket, shared_search_limiter
from app.tools.search_provider import SearchResponse

SearchFn = Callable[..., Awaitable[SearchResponse]]


@dataclass(slots=True)
class QueryOutcome:
    query: SearchQuery
    evidence: list[Evidence] = field(default_factory=list)
    from_cache: bool = False
    error: str | None = None


@dataclass(slots=True)
class ExecutionReport:
    evidence: list[Evidence] = field(default_factory=list)
    outcomes: list[QueryOutcome] = field(default_factory=list)
    partial: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def group_by_priority(queries: list[SearchQuery]) -> dict[int, list[SearchQuery]]:
    tiers: dict[int, list[SearchQuery]] = {}
    for query in queries:
        tiers.setdefault(clamp_priority(query.priority), []).append(query)
    return tiers


def build_cache_key(query: str, location: ApproxLocation | None) -> str:
    key = query
    if location is not None:
        if location.country:
            key += "|country:" + location.country
        if location.region:
            key += "|region:" + location.region
    return key


def results_to_evidence(results: list[RawResult], *, retrieved_at: datetime) -> list[Evidence]:
    """Convert provider results into preliminary evidence records."""
    evidence: list[Evidence] = []
    for result in results:
        url = result.url if isinstance(result.url, str) else ""
        title = result.title if isinstance(result.title, str) else ""
        if not url or not title:
            continue
        evidence.append(
            Evidence(
                id=generate_stable_id(url, title, result.published_at),
                url=url,
                title=title,
                snippet=result.content if isinstance(result.content, str) else "",
                published_at=result.published_at,
                retrieved_at=retrieved_at,
                source_type=infer_source_type(url),
            )
        )
    return evidence


def dedupe_evidence(evidence: list[Evidence]) -> list[Evidence]:
    """Exact dedup on (url, title); first seen wins."""
    seen: set[tuple[str, str]] = set()
    unique: list[Evidence] = []
    for ev in evidence:
        key = (ev.url, ev.title)
        if key in seen:
            continue
        seen.add(key)
        unique.append(ev)
    return unique


class SearchExecutor:
    """Runs queries tier by tier (priority 1, 2, 3) with bounded parallelism.

    A tier is fully awaited before the next one starts. Within a tier every
    query is its own task and a semaphore caps how many execute at once. Each
    query consults the evidence cache before calling the search provider
    through the shared rate limiter. Failed queries contribute nothing.

    Without an explicit cache the executor builds one over the configured
    backend; start() launches its warm-up and sweep, stop() ends them.
    """

    def __init__(
        self,
        *,
        cache: EvidenceCache | None = None,
        search_fn: SearchFn | None = None,
        limiter: TokenBucket | None = None,
        max_parallel: int | None = None,
        timeout_seconds: float | None = None,
        max_results_per_query: int | None = None,
    ):
        self.cache = cache if cache is not None else build_evidence_cache()
        self._search_fn = search_fn
        self._limiter = limiter
        self.max_parallel = settings.max_parallel_searches if max_parallel is None else max_parallel
        self.timeout_seconds = (
            settings.search_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self.max_results_per_query = (
            settings.search_max_results_per_query
            if max_results_per_query is None
            else max_results_per_query
        )

    async def __aenter__(self) -> SearchExecutor:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        self.cache.start(stop_event)

    async def stop(self) -> None:
        await self.cache.stop()

    async def run(
        self,
        queries: list[SearchQuery],
        location: ApproxLocation | None = None,
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[Evidence]:
        report = await self.run_detailed(
            queries,
            location,
            deadline=deadline,
            cancel_event=cancel_event,
        )
        return report.evidence

    async def run_detailed(
        self,
        queries: list[SearchQuery],
        location: ApproxLocation | None = None,
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionReport:
        """Like run(), also returning per-query outcomes and the partial flag.

        `deadline` is an absolute event-loop time (`loop.time()`); it defaults
        to now plus the configured search timeout.
        """
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = loop.time() + self.timeout_seconds

        report = ExecutionReport()
        collected: list[Evidence] = []
        semaphore = asyncio.Semaphore(max(self.max_parallel, 1))
        tiers = group_by_priority(queries)

        for priority in range(1, LOWEST_PRIORITY + 1):
            tier = tiers.get(priority)
            if not tier:
                continue
            if loop.time() >= deadline or (cancel_event is not None and cancel_event.is_set()):
                report.partial = True
                break

            tasks = [
                asyncio.create_task(self._run_query(query, location, semaphore, collected))
                for query in tier
            ]
            completed = await self._await_tier(tasks, deadline, cancel_event)
            report.outcomes.extend(
                t.result() for t in tasks if t.done() and not t.cancelled()
            )
            log_event(
                "search_tier_completed",
                f"priority {priority} tier finished",
                priority=priority,
                queries=len(tier),
                completed=completed,
                evidence_so_far=len(collected),
            )
            if not completed:
                report.partial = True
                break

        report.evidence = dedupe_evidence(collected)
        return report

    async def _await_tier(
        self,
        tasks: list[asyncio.Task[Any]],
        deadline: float,
        cancel_event: asyncio.Event | None,
    ) -> bool:
        """Wait for every task in the tier; False if the deadline or cancel cut it short."""
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task[Any]] = set(tasks)
        cancel_waiter = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        try:
            while pending:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    break
                waitables = set(pending)
                if cancel_waiter is not None:
                    waitables.add(cancel_waiter)
                done, _ = await asyncio.wait(
                    waitables,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
                if cancel_waiter is not None and cancel_waiter in done:
                    break
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return not pending

    async def _run_query(
        self,
        query: SearchQuery,
        location: ApproxLocation | None,
        semaphore: asyncio.Semaphore,
        sink: list[Evidence],
    ) -> QueryOutcome:
        outcome = QueryOutcome(query=query)
        try:
            async with semaphore:
                outcome.evidence, outcome.from_cache = await self.execute_query(query, location)
        except Exception as exc:
            outcome.error = str(exc) or type(exc).__name__
            log_event(
                "search_query_failed",
                "query contributed no evidence",
                query=query.text,
                intent=query.intent,
                error=outcome.error,
            )
        sink.extend(outcome.evidence)
        return outcome

    async def execute_query(
        self,
        query: SearchQuery,
        location: ApproxLocation | None,
    ) -> tuple[list[Evidence], bool]:
        """Evidence for one query and whether it came from the cache."""
        cache_key = build_cache_key(query.text, location)
        cached = await self.cache.get_evidence(cache_key)
        if cached is not None:
            return cached, True

        limiter = self._limiter or shared_search_limiter()
        await limiter.acquire()

        search_fn = self._search_fn or search_provider.search
        started = time.monotonic()
        try:
            response = await search_fn(
                query.text,
                location=location,
                max_results=self.max_results_per_query,
            )
        except Exception as exc:
            log_search_call(
                query.text,
                provider=settings.search_provider,
                duration_ms=int((time.monotonic() - started) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        evidence = results_to_evidence(list(response.results), retrieved_at=_utc_now())
        log_search_call(
            query.text,
            provider=response.provider,
            results_count=len(evidence),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        # Empty results are cached as well.
        try:
            await self.cache.set_evidence(cache_key, evidence)
        except Exception as exc:
            log_cache_operation("set", "evidence", "error", details=cache_key, error=str(exc))
        return evidence, False
