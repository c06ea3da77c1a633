"""PostgreSQL access for the persistent web cache, using asyncpg."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from app.config import settings


WEB_CACHE_SCHEMA = """
CREATE TABLE IF NOT EXISTS web_cache (
    hash TEXT PRIMARY KEY,
    query TEXT NOT NULL,
    result TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    ttl_seconds INTEGER NOT NULL DEFAULT 86400
);
CREATE INDEX IF NOT EXISTS idx_web_cache_created_at ON web_cache (created_at);
CREATE INDEX IF NOT EXISTS idx_web_cache_expiry ON web_cache (created_at, ttl_seconds);
"""

# Connection pool
_pool: asyncpg.Pool | None = None


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ensure_schema() -> None:
    """Create the web_cache table and its indexes if missing."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(WEB_CACHE_SCHEMA)


# --- Web cache ---

async def upsert_cache_entry(
    fingerprint: str,
    query: str,
    result: str,
    created_at: datetime,
    ttl_seconds: int,
) -> None:
    """Insert or replace one cache row."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            """
            INSERT INTO web_cache (hash, query, result, created_at, ttl_seconds)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (hash) DO UPDATE SET
                query = EXCLUDED.query,
                result = EXCLUDED.result,
                created_at = EXCLUDED.created_at,
                ttl_seconds = EXCLUDED.ttl_seconds
            """,
            fingerprint,
            query,
            result,
            created_at,
            ttl_seconds,
        )


async def get_cache_entry(fingerprint: str) -> dict[str, Any] | None:
    """Get one cache row by fingerprint, expired or not."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(
            """
            SELECT hash, query, result, created_at, ttl_seconds
            FROM web_cache
            WHERE hash = $1
            """,
            fingerprint,
        )
        return dict(result) if result else None


async def delete_cache_entry(fingerprint: str) -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute("DELETE FROM web_cache WHERE hash = $1", fingerprint)


async def get_recent_cache_entries(limit: int, now: datetime) -> list[dict[str, Any]]:
    """Most recently created unexpired rows, newest first."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        results = await conn.fetch(
            """
            SELECT hash, query, result, created_at, ttl_seconds
            FROM web_cache
            WHERE created_at + make_interval(secs => ttl_seconds) > $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [dict(r) for r in results]


async def delete_expired_cache_entries(now: datetime) -> int:
    """Delete rows whose age exceeds their TTL. Returns the number removed."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        status = await conn.execute(
            """
            DELETE FROM web_cache
            WHERE created_at + make_interval(secs => ttl_seconds) < $1
            """,
            now,
        )
    # asyncpg returns the command tag, e.g. "DELETE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
