from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.research_core.cache import multilevel
from app.research_core.cache.multilevel import (
    EvidenceCache,
    MultiLevelCache,
    RequestCoalescer,
    fingerprint_key,
)
from app.research_core.models.interfaces import CacheEntry, Evidence

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory persistent tier that records calls."""

    def __init__(self, *, fetch_delay: float = 0.0, fail: bool = False):
        self.rows: dict[str, CacheEntry] = {}
        self.fetch_delay = fetch_delay
        self.fail = fail
        self.fetches = 0
        self.deleted: list[str] = []
        self.closed = False

    async def fetch(self, fingerprint):
        self.fetches += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fail:
            raise ConnectionError("database unreachable")
        return self.rows.get(fingerprint)

    async def upsert(self, entry):
        if self.fail:
            raise ConnectionError("database unreachable")
        self.rows[entry.fingerprint] = entry

    async def delete(self, fingerprint):
        self.deleted.append(fingerprint)
        self.rows.pop(fingerprint, None)

    async def recent(self, limit, now):
        fresh = [e for e in self.rows.values() if not e.is_expired(now)]
        fresh.sort(key=lambda e: e.created_at, reverse=True)
        return fresh[:limit]

    async def delete_expired(self, now):
        expired = [fp for fp, e in self.rows.items() if e.is_expired(now)]
        for fp in expired:
            del self.rows[fp]
        return len(expired)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock(monkeypatch):
    """Controllable UTC clock for the cache module."""
    state = {"now": START}
    monkeypatch.setattr(multilevel, "_utc_now", lambda: state["now"])

    def advance(seconds: float) -> None:
        state["now"] = state["now"] + timedelta(seconds=seconds)

    return advance


def _entry(key: str, created_at: datetime, ttl: int = 60, payload: bytes = b"v") -> CacheEntry:
    return CacheEntry(
        fingerprint=fingerprint_key(key),
        key=key,
        payload=payload,
        created_at=created_at,
        ttl_seconds=ttl,
    )


@pytest.mark.asyncio
async def test_set_then_get_hits_memory(clock):
    cache = MultiLevelCache(None, lru_size=10, ttl_seconds=60)

    await cache.set("k", b"value")
    payload, found = await cache.get("k")

    assert (payload, found) == (b"value", True)
    assert cache.stats["memory_hits"] == 1


@pytest.mark.asyncio
async def test_missing_key_reports_not_found(clock):
    cache = MultiLevelCache(FakeStore(), lru_size=10, ttl_seconds=60)

    assert await cache.get("absent") == (None, False)
    assert cache.stats["misses"] == 1


@pytest.mark.asyncio
async def test_concurrent_gets_share_one_lookup(clock):
    store = FakeStore(fetch_delay=0.05)
    store.rows[fingerprint_key("k")] = _entry("k", START, payload=b"shared")
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)

    results = await asyncio.gather(*(cache.get("k") for _ in range(10)))

    assert all(result == (b"shared", True) for result in results)
    assert store.fetches == 1
    assert cache.stats["lookups"] == 1


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(clock):
    cache = MultiLevelCache(None, lru_size=10, ttl_seconds=60)
    await cache.set("k", b"value")

    clock(60)
    assert await cache.get("k") == (b"value", True)

    clock(1)
    assert await cache.get("k") == (None, False)
    assert cache.memory_size() == 0


@pytest.mark.asyncio
async def test_lru_evicts_least_recently_used(clock):
    cache = MultiLevelCache(None, lru_size=2, ttl_seconds=60)

    await cache.set("a", b"1")
    await cache.set("b", b"2")
    await cache.get("a")
    await cache.set("c", b"3")

    assert await cache.get("b") == (None, False)
    assert await cache.get("a") == (b"1", True)
    assert await cache.get("c") == (b"3", True)


@pytest.mark.asyncio
async def test_persistent_hit_is_promoted_to_memory(clock):
    store = FakeStore()
    store.rows[fingerprint_key("k")] = _entry("k", START - timedelta(seconds=10))
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)

    assert await cache.get("k") == (b"v", True)
    assert await cache.get("k") == (b"v", True)

    assert store.fetches == 1
    assert cache.stats["persistent_hits"] == 1
    assert cache.stats["memory_hits"] == 1


@pytest.mark.asyncio
async def test_expired_persistent_entry_is_deleted(clock):
    store = FakeStore()
    store.rows[fingerprint_key("k")] = _entry("k", START - timedelta(seconds=120), ttl=60)
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)

    assert await cache.get("k") == (None, False)
    # Deletion runs in the background.
    await asyncio.sleep(0.01)

    assert store.deleted == [fingerprint_key("k")]
    assert cache.memory_size() == 0


@pytest.mark.asyncio
async def test_store_failure_degrades_to_memory(clock):
    store = FakeStore(fail=True)
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)

    assert await cache.get("k") == (None, False)
    await cache.set("k", b"value")

    assert await cache.get("k") == (b"value", True)


@pytest.mark.asyncio
async def test_set_writes_through_to_store(clock):
    store = FakeStore()
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=90)

    await cache.set("k", b"value")

    row = store.rows[fingerprint_key("k")]
    assert row.key == "k"
    assert row.payload == b"value"
    assert row.created_at == START
    assert row.ttl_seconds == 90


@pytest.mark.asyncio
async def test_warm_up_loads_newest_fresh_entries(clock):
    store = FakeStore()
    for i in range(4):
        entry = _entry(f"k{i}", START - timedelta(seconds=40 - i * 10))
        store.rows[entry.fingerprint] = entry
    stale = _entry("stale", START - timedelta(seconds=500))
    store.rows[stale.fingerprint] = stale
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60, warmup_limit=3)

    loaded = await cache.warm_up()

    assert loaded == 3
    assert cache.memory_size() == 3
    store.fetches = 0
    assert await cache.get("k3") == (b"v", True)
    assert store.fetches == 0


@pytest.mark.asyncio
async def test_cleanup_expired_purges_both_tiers(clock):
    store = FakeStore()
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)
    await cache.set("old", b"1")
    clock(45)
    await cache.set("new", b"2")
    clock(30)

    removed = await cache.cleanup_expired()

    assert removed == 1
    assert cache.memory_size() == 1
    assert list(store.rows) == [fingerprint_key("new")]


@pytest.mark.asyncio
async def test_start_and_stop_background_workers(clock):
    store = FakeStore()
    store.rows[fingerprint_key("k")] = _entry("k", START)
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60, cleanup_interval_seconds=3600)

    async with cache:
        await asyncio.sleep(0.01)
        assert cache.memory_size() == 1

    assert cache._workers == []
    assert store.closed


@pytest.mark.asyncio
async def test_stop_survives_store_close_failure(clock):
    store = FakeStore()

    async def broken_close():
        raise ConnectionError("pool already gone")

    store.close = broken_close
    cache = MultiLevelCache(store, lru_size=10, ttl_seconds=60)

    await cache.stop()

    assert cache._workers == []


@pytest.mark.asyncio
async def test_coalescer_shares_failures_and_forgets_key():
    coalescer = RequestCoalescer()
    calls = 0

    async def boom():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise ValueError("bad")

    results = await asyncio.gather(
        coalescer.do("k", boom),
        coalescer.do("k", boom),
        return_exceptions=True,
    )

    assert calls == 1
    assert all(isinstance(r, ValueError) for r in results)
    assert coalescer._in_flight == {}


@pytest.mark.asyncio
async def test_evidence_cache_round_trip(clock):
    evidence_cache = EvidenceCache(MultiLevelCache(None, lru_size=10, ttl_seconds=60))
    evidence = [
        Evidence(
            id="0123456789abcdef",
            url="https://techcrunch.com/a",
            title="Loom raises",
            snippet="Details",
            published_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
            retrieved_at=START,
            source_type="news",
        )
    ]

    await evidence_cache.set_evidence("loom funding", evidence)

    assert await evidence_cache.get_evidence("loom funding") == evidence
    assert await evidence_cache.get_evidence("other") is None


@pytest.mark.asyncio
async def test_evidence_cache_ignores_corrupt_payload(clock):
    cache = MultiLevelCache(None, lru_size=10, ttl_seconds=60)
    evidence_cache = EvidenceCache(cache)

    await cache.set("bad-json", b"{not json")
    await cache.set("missing-fields", b'[{"url": "https://a.com"}]')

    assert await evidence_cache.get_evidence("bad-json") is None
    assert await evidence_cache.get_evidence("missing-fields") is None
