"""Tests for the in-process memo cache and the Redis JSON cache.

Covers:
- LRU eviction and TTL expiry of MemoCache
- RedisJSONCache TTL on set, JSON decoding, Redis failures as misses
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.orderflow.core.cache import MemoCache
from src.orderflow.core.redis import RedisJSONCache


class TestMemoCache:
    def test_lru_eviction(self):
        cache = MemoCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert len(cache) == 2

    def test_ttl_expiry(self):
        cache = MemoCache(ttl_seconds=10)
        with patch("src.orderflow.core.cache.time.monotonic", return_value=100.0):
            cache.set("k", "v")
        with patch("src.orderflow.core.cache.time.monotonic", return_value=105.0):
            assert cache.get("k") == "v"
        with patch("src.orderflow.core.cache.time.monotonic", return_value=111.0):
            assert cache.get("k", "gone") == "gone"

    def test_cached_none_is_a_hit(self):
        cache = MemoCache()
        cache.set("k", None)
        assert "k" in cache
        cache.clear()
        assert "k" not in cache


class TestRedisJSONCache:
    @pytest.mark.asyncio
    async def test_set_uses_ttl(self):
        redis = AsyncMock()
        await RedisJSONCache(redis, ttl_seconds=600).set("ingest:ai:orders:abc", {"fields": {}})
        redis.set.assert_awaited_once_with("ingest:ai:orders:abc", '{"fields": {}}', ex=600)

    @pytest.mark.asyncio
    async def test_get_decodes_json(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value='{"unique_key": "external_id"}')
        assert await RedisJSONCache(redis, 60).get("k") == {"unique_key": "external_id"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [None, "", "{not json"])
    async def test_get_miss(self, raw):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=raw)
        assert await RedisJSONCache(redis, 60).get("k") is None

    @pytest.mark.asyncio
    async def test_redis_errors_are_misses(self):
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        redis.set = AsyncMock(side_effect=RedisConnectionError("down"))
        cache = RedisJSONCache(redis, 60)

        assert await cache.get("k") is None
        await cache.set("k", 1)
