from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from app.config import settings
from app.research_core.models.interfaces import CacheEntry
from app.services import database

CACHE_VERSION = 1


class CacheStore(Protocol):
    """Persistent tier keyed by fingerprint. Writes are idempotent upserts."""

    async def fetch(self, fingerprint: str) -> CacheEntry | None: ...

    async def upsert(self, entry: CacheEntry) -> None: ...

    async def delete(self, fingerprint: str) -> None: ...

    async def recent(self, limit: int, now: datetime) -> list[CacheEntry]: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def close(self) -> None: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresCacheStore:
    """web_cache table accessed through the shared asyncpg pool.

    The table is created on first use; a failed attempt is retried on the
    next call.
    """

    def __init__(self) -> None:
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                await database.ensure_schema()
                self._schema_ready = True

    async def fetch(self, fingerprint: str) -> CacheEntry | None:
        await self._ensure_schema()
        row = await database.get_cache_entry(fingerprint)
        return self._row_to_entry(row) if row else None

    async def upsert(self, entry: CacheEntry) -> None:
        await self._ensure_schema()
        await database.upsert_cache_entry(
            entry.fingerprint,
            entry.key,
            entry.payload.decode("utf-8"),
            entry.created_at,
            entry.ttl_seconds,
        )

    async def delete(self, fingerprint: str) -> None:
        await self._ensure_schema()
        await database.delete_cache_entry(fingerprint)

    async def recent(self, limit: int, now: datetime) -> list[CacheEntry]:
        await self._ensure_schema()
        rows = await database.get_recent_cache_entries(limit, now)
        return [self._row_to_entry(row) for row in rows]

    async def delete_expired(self, now: datetime) -> int:
        await self._ensure_schema()
        return await database.delete_expired_cache_entries(now)

    async def close(self) -> None:
        await database.close_pool()

    @staticmethod
    def _row_to_entry(row: dict[str, Any]) -> CacheEntry:
        result = row["result"]
        if not isinstance(result, str):
            result = json.dumps(result)
        return CacheEntry(
            fingerprint=row["hash"],
            key=row.get("query") or "",
            payload=result.encode("utf-8"),
            created_at=_as_utc(row["created_at"]),
            ttl_seconds=int(row["ttl_seconds"]),
        )


class FileCacheStore:
    """One JSON document per fingerprint under a cache directory."""

    def __init__(self, base_dir: str | None = None):
        self.base_dir = Path(base_dir or settings.cache_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, fingerprint: str) -> Path:
        return self.base_dir / f"{fingerprint}.json"

    async def fetch(self, fingerprint: str) -> CacheEntry | None:
        return await asyncio.to_thread(self._read, self.path_for(fingerprint))

    async def upsert(self, entry: CacheEntry) -> None:
        await asyncio.to_thread(self._write, entry)

    async def delete(self, fingerprint: str) -> None:
        await asyncio.to_thread(self.path_for(fingerprint).unlink, missing_ok=True)

    async def recent(self, limit: int, now: datetime) -> list[CacheEntry]:
        def _scan() -> list[CacheEntry]:
            entries = [self._read(path) for path in self.base_dir.glob("*.json")]
            fresh = [e for e in entries if e is not None and not e.is_expired(now)]
            fresh.sort(key=lambda e: e.created_at, reverse=True)
            return fresh[: max(limit, 0)]

        return await asyncio.to_thread(_scan)

    async def delete_expired(self, now: datetime) -> int:
        def _sweep() -> int:
            removed = 0
            for path in self.base_dir.glob("*.json"):
                entry = self._read(path)
                if entry is None or entry.is_expired(now):
                    path.unlink(missing_ok=True)
                    removed += 1
            return removed

        return await asyncio.to_thread(_sweep)

    async def close(self) -> None:
        return None

    def _write(self, entry: CacheEntry) -> None:
        payload = {
            "version": CACHE_VERSION,
            "fingerprint": entry.fingerprint,
            "key": entry.key,
            "created_at": entry.created_at.isoformat(),
            "ttl_seconds": int(entry.ttl_seconds),
            "payload": entry.payload.decode("utf-8"),
        }
        path = self.path_for(entry.fingerprint)
        tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _read(path: Path) -> CacheEntry | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            created_at = _as_utc(datetime.fromisoformat(data["created_at"]))
            return CacheEntry(
                fingerprint=str(data["fingerprint"]),
                key=str(data.get("key") or ""),
                payload=str(data["payload"]).encode("utf-8"),
                created_at=created_at,
                ttl_seconds=int(data["ttl_seconds"]),
            )
        except (OSError, ValueError, KeyError, TypeError):
            # Unreadable documents are treated as absent; the sweep removes them.
            return None


def build_cache_store(backend: str | None = None) -> CacheStore | None:
    """Persistent tier for the configured backend; None means memory only."""
    backend = (backend or settings.cache_backend).lower().strip()
    if backend == "postgres":
        if not settings.database_url:
            return None
        return PostgresCacheStore()
    if backend == "file":
        return FileCacheStore()
    if backend == "memory":
        return None
    raise ValueError(f"Unsupported CACHE_BACKEND: {backend}")
