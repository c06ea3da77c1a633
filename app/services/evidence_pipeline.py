"""Idea -> planned queries -> tiered search -> normalized, ranked evidence."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from app.config import settings
from app.models.schemas import ApproxLocation, IdeaInput
from app.research_core.evidence.normalizer import EvidenceNormalizer
from app.research_core.models.interfaces import Evidence, SearchQuery
from app.services.logger import log_event
from app.services.query_planner import QueryPlanner
from app.services.search_executor import SearchExecutor


@dataclass(slots=True)
class EvidenceBundle:
    queries: list[SearchQuery] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)
    partial: bool = False
    raw_count: int = 0


def location_for(idea: IdeaInput, location: ApproxLocation | None) -> ApproxLocation | None:
    if location is not None:
        return location
    if idea.location and idea.location.strip():
        return ApproxLocation(country=idea.location.strip())
    return None


class EvidencePipeline:
    """Plan, search and normalize evidence for one idea at a time.

    The executor's cache is started on first use (warm-up plus periodic
    sweep); call stop() or use the pipeline as an async context manager to
    end the background work and release the persistent store.
    """

    def __init__(
        self,
        *,
        planner: QueryPlanner | None = None,
        executor: SearchExecutor | None = None,
        normalizer: EvidenceNormalizer | None = None,
        max_evidence: int | None = None,
    ):
        self.planner = planner or QueryPlanner()
        self.executor = executor or SearchExecutor()
        self.normalizer = normalizer or EvidenceNormalizer()
        self.max_evidence = settings.max_evidence if max_evidence is None else max_evidence

    async def __aenter__(self) -> EvidencePipeline:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        self.executor.start(stop_event)

    async def stop(self) -> None:
        await self.executor.stop()

    async def gather(
        self,
        idea: IdeaInput,
        location: ApproxLocation | None = None,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        max_evidence: int | None = None,
    ) -> EvidenceBundle:
        started = time.monotonic()
        self.start()
        queries = self.planner.plan(idea)

        deadline = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().time() + timeout
        report = await self.executor.run_detailed(
            queries,
            location_for(idea, location),
            deadline=deadline,
            cancel_event=cancel_event,
        )

        ranked = self.normalizer.normalize(report.evidence)
        limit = self.max_evidence if max_evidence is None or max_evidence <= 0 else max_evidence
        if limit > 0:
            ranked = ranked[:limit]

        log_event(
            "evidence_gathered",
            f"evidence pipeline finished for {idea.title!r}",
            queries=len(queries),
            raw=len(report.evidence),
            kept=len(ranked),
            partial=report.partial,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return EvidenceBundle(
            queries=queries,
            evidence=ranked,
            partial=report.partial,
            raw_count=len(report.evidence),
        )
