"""Redis connection pool and a small JSON cache on top of it.

The pool backs the job queue streams; ``RedisJSONCache`` backs the AI column
mapping memo, whose entries expire after ``INGEST_LLM_CACHE_TTL``.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.orderflow.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


# ── JSON Cache ──────────────────────────────────────────────────────────────


class RedisJSONCache:
    """Best-effort JSON value cache with a fixed TTL.

    Read and write failures are logged and treated as a miss, so callers can
    use the cache without guarding against an unavailable Redis.

    Args:
        redis_client: Raw async Redis client.
        ttl_seconds: Expiry applied to every ``set``.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except aioredis.RedisError as exc:
            logger.warning("redis_cache_get_failed", key=key, error=str(exc))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: Any) -> None:
        try:
            await self._redis.set(key, json.dumps(value), ex=self._ttl)
        except aioredis.RedisError as exc:
            logger.warning("redis_cache_set_failed", key=key, error=str(exc))
