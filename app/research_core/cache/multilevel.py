from __future__ import annotations

import asyncio
import hashlib
import json
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from app.config import settings
from app.research_core.cache.stores import CacheStore, build_cache_store
from app.research_core.models.interfaces import (
    CacheEntry,
    Evidence,
    evidence_from_dict,
    evidence_to_dict,
)
from app.services.logger import log_cache_operation

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fingerprint_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class RequestCoalescer:
    """Share one in-flight call per key between concurrent callers.

    The first caller for a key starts the call as a task; callers arriving
    while it runs await the same task. A caller being cancelled does not
    cancel the shared task.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.ensure_future(fn())
                self._in_flight[key] = task
                task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]


class MultiLevelCache:
    """Read-through cache: bounded LRU memory tier over an optional persistent store."""

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        lru_size: int | None = None,
        ttl_seconds: int | None = None,
        cleanup_interval_seconds: float | None = None,
        warmup_limit: int | None = None,
    ):
        self.store = store
        self.lru_size = settings.cache_lru_size if lru_size is None else lru_size
        self.ttl_seconds = settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.cleanup_interval_seconds = (
            settings.cache_cleanup_interval_seconds
            if cleanup_interval_seconds is None
            else cleanup_interval_seconds
        )
        self.warmup_limit = settings.cache_warmup_limit if warmup_limit is None else warmup_limit
        self.stats = {"lookups": 0, "memory_hits": 0, "persistent_hits": 0, "misses": 0}

        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._coalescer = RequestCoalescer()
        self._workers: list[asyncio.Task[Any]] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._stop_event: asyncio.Event | None = None

    async def __aenter__(self) -> MultiLevelCache:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --- Public API ---

    async def get(self, key: str) -> tuple[bytes | None, bool]:
        fingerprint = fingerprint_key(key)
        entry = await self._coalescer.do(fingerprint, lambda: self._lookup(fingerprint))
        if entry is None:
            return None, False
        return entry.payload, True

    async def set(self, key: str, value: bytes) -> None:
        entry = CacheEntry(
            fingerprint=fingerprint_key(key),
            key=key,
            payload=value,
            created_at=_utc_now(),
            ttl_seconds=int(self.ttl_seconds),
        )
        self._memory_put(entry)
        if self.store is None:
            return
        try:
            await self.store.upsert(entry)
        except Exception as exc:
            log_cache_operation("set", "persistent", "error", details=entry.fingerprint, error=str(exc))

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        """Launch warm-up and the periodic sweep. Safe to call more than once."""
        if self._workers or self.store is None:
            return
        self._stop_event = stop_event or asyncio.Event()
        self._workers.append(asyncio.create_task(self.warm_up()))
        if self.cleanup_interval_seconds and self.cleanup_interval_seconds > 0:
            self._workers.append(asyncio.create_task(self._cleanup_loop(self._stop_event)))

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = [*self._workers, *self._background]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._background.clear()
        self._stop_event = None
        if self.store is not None:
            try:
                await self.store.close()
            except Exception as exc:
                log_cache_operation("close", "persistent", "error", error=str(exc))

    async def warm_up(self) -> int:
        """Preload the newest unexpired persistent entries into memory."""
        if self.store is None or self.warmup_limit <= 0:
            return 0
        now = _utc_now()
        try:
            entries = await self.store.recent(self.warmup_limit, now)
        except Exception as exc:
            log_cache_operation("warm_up", "persistent", "error", error=str(exc))
            return 0

        loaded = 0
        # Oldest first so the newest end up most recently used.
        for entry in reversed(entries):
            if entry.is_expired(now) or entry.fingerprint in self._memory:
                continue
            self._memory_put(entry)
            loaded += 1
        log_cache_operation("warm_up", "memory", "success", details=f"loaded={loaded}")
        return loaded

    async def cleanup_expired(self) -> int:
        """Drop expired entries from both tiers. Returns persistent rows removed."""
        now = _utc_now()
        for fingerprint in [fp for fp, e in self._memory.items() if e.is_expired(now)]:
            del self._memory[fingerprint]
        if self.store is None:
            return 0
        try:
            removed = await self.store.delete_expired(now)
        except Exception as exc:
            log_cache_operation("cleanup", "persistent", "error", error=str(exc))
            return 0
        log_cache_operation("cleanup", "persistent", "success", details=f"removed={removed}")
        return removed

    def memory_size(self) -> int:
        return len(self._memory)

    # --- Internals ---

    async def _lookup(self, fingerprint: str) -> CacheEntry | None:
        self.stats["lookups"] += 1
        now = _utc_now()

        entry = self._memory.get(fingerprint)
        if entry is not None:
            if not entry.is_expired(now):
                self._memory.move_to_end(fingerprint)
                self.stats["memory_hits"] += 1
                return entry
            del self._memory[fingerprint]

        if self.store is None:
            self.stats["misses"] += 1
            return None

        try:
            entry = await self.store.fetch(fingerprint)
        except Exception as exc:
            log_cache_operation("get", "persistent", "error", details=fingerprint, error=str(exc))
            self.stats["misses"] += 1
            return None

        if entry is None:
            self.stats["misses"] += 1
            return None

        if entry.is_expired(now):
            self._spawn(self._delete_persistent(fingerprint))
            self.stats["misses"] += 1
            return None

        self._memory_put(entry)
        self.stats["persistent_hits"] += 1
        return entry

    def _memory_put(self, entry: CacheEntry) -> None:
        if self.lru_size <= 0:
            return
        self._memory[entry.fingerprint] = entry
        self._memory.move_to_end(entry.fingerprint)
        while len(self._memory) > self.lru_size:
            self._memory.popitem(last=False)

    async def _delete_persistent(self, fingerprint: str) -> None:
        try:
            await self.store.delete(fingerprint)
        except Exception as exc:
            log_cache_operation("delete", "persistent", "error", details=fingerprint, error=str(exc))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cleanup_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.cleanup_interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            await self.cleanup_expired()


class EvidenceCache:
    """Evidence-list view over a MultiLevelCache."""

    def __init__(self, cache: MultiLevelCache):
        self.cache = cache

    async def get_evidence(self, key: str) -> list[Evidence] | None:
        payload, found = await self.cache.get(key)
        if not found or payload is None:
            return None
        try:
            items = json.loads(payload)
            if not isinstance(items, list):
                raise ValueError("cached evidence payload is not a list")
            return [evidence_from_dict(item) for item in items]
        except (ValueError, TypeError, AttributeError) as exc:
            log_cache_operation("decode", "evidence", "error", details=key, error=str(exc))
            return None

    async def set_evidence(self, key: str, evidence: list[Evidence]) -> None:
        payload = json.dumps([evidence_to_dict(ev) for ev in evidence], ensure_ascii=False)
        await self.cache.set(key, payload.encode("utf-8"))

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        self.cache.start(stop_event)

    async def stop(self) -> None:
        await self.cache.stop()


def build_evidence_cache(store: CacheStore | None = None) -> EvidenceCache:
    """Evidence cache over the configured persistent backend."""
    return EvidenceCache(MultiLevelCache(store if store is not None else build_cache_store()))
