"""Integration tests for CacheManager against a real Redis instance."""

from __future__ import annotations

import pytest

from bibliosearch.cache.manager import CacheManager, TTLCategory
from bibliosearch.config.settings import CacheSettings

pytestmark = [pytest.mark.integration, pytest.mark.asyncio, pytest.mark.redis]


@pytest.fixture
async def cache(redis_ready):
    manager = CacheManager(CacheSettings(backend="redis", redis_host=redis_ready, redis_db=15, key_prefix="it"))
    await manager.initialize()
    yield manager
    await manager.clear()
    await manager.shutdown()


class TestRedisCache:
    async def test_connected(self, cache):
        assert cache.backend == "redis"

    async def test_roundtrip_with_category_ttl(self, cache):
        key = cache.make_key("search", "", {"q": "solar", "limit": 20})
        await cache.set(key, {"hits": [1, 2]}, TTLCategory.SEARCH)

        assert await cache.get(key) == {"hits": [1, 2]}
        ttl = await cache._client.ttl(key)
        assert 0 < ttl <= cache.ttl_for(TTLCategory.SEARCH)

    async def test_delete_pattern(self, cache):
        await cache.set(cache.make_key("network", 1), [1], TTLCategory.RELATIONSHIPS)
        await cache.set(cache.make_key("network", 2), [2], TTLCategory.RELATIONSHIPS)
        await cache.set(cache.make_key("stats"), {"n": 1}, TTLCategory.STATISTICS)

        assert await cache.delete_pattern("it:network:*") == 2
        assert await cache.exists(cache.make_key("stats"))

    async def test_stats_include_keyspace(self, cache):
        await cache.get(cache.make_key("missing"))
        stats = await cache.stats()
        assert stats["misses"] >= 1
        assert "keyspace_hits" in stats
