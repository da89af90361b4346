"""Tests for the cache manager (memory backend, TTL categories, Redis degradation)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from bibliosearch.cache import manager as cache_module
from bibliosearch.cache.manager import CacheManager, TTLCategory
from bibliosearch.config.settings import CacheSettings
from bibliosearch.models.graph import NetworkKind


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def memory_cache(clock: FakeClock) -> CacheManager:
    manager = CacheManager(CacheSettings(backend="memory"), clock=clock)
    await manager.initialize()
    return manager


@pytest.fixture
def redis_cache() -> tuple[CacheManager, AsyncMock]:
    """A Redis-configured manager wired to a mocked client."""
    manager = CacheManager(CacheSettings(backend="redis"))
    client = AsyncMock()
    client.info.return_value = {}
    client.dbsize.return_value = 0
    manager._client = client
    return manager, client


# ══════════════════════════════════════════════════════════════════════════════
# Keys and TTL categories
# ══════════════════════════════════════════════════════════════════════════════


class TestKeys:
    def test_documented_shape(self, memory_cache: CacheManager) -> None:
        assert memory_cache.make_key("search", "", {"q": "ai", "limit": 20}) == "biblio:search::limit:20|q:ai"

    def test_param_order_irrelevant(self, memory_cache: CacheManager) -> None:
        a = memory_cache.make_key("search", "", {"q": "ai", "year": 2020, "limit": 20})
        b = memory_cache.make_key("search", "", {"limit": 20, "year": 2020, "q": "ai"})
        assert a == b

    def test_identifier(self, memory_cache: CacheManager) -> None:
        assert memory_cache.make_key("network:citation", 42) == "biblio:network:citation:42"

    def test_values_cannot_imitate_other_params(self, memory_cache: CacheManager) -> None:
        forged = memory_cache.make_key("search", "", {"q": "ai|limit:5"})
        genuine = memory_cache.make_key("search", "", {"q": "ai", "limit": 5})
        assert forged != genuine
        assert forged == "biblio:search::q:ai%7Climit%3A5"

    def test_bool_and_enum_values(self, memory_cache: CacheManager) -> None:
        key = memory_cache.make_key("x", "", {"peer_reviewed": True, "kind": NetworkKind.COLLABORATION})
        assert key == "biblio:x::kind:collaboration|peer_reviewed:1"

    def test_custom_prefix(self) -> None:
        manager = CacheManager(CacheSettings(backend="memory", key_prefix="tenant-a"))
        assert manager.make_key("facets").startswith("tenant-a:facets:")


class TestTTLCategories:
    @pytest.mark.parametrize(
        ("category", "seconds"),
        [
            (TTLCategory.STATISTICS, 86400),
            (TTLCategory.LISTINGS, 7200),
            (TTLCategory.RELATIONSHIPS, 3600),
            (TTLCategory.SEARCH, 300),
            (TTLCategory.SEARCH_FALLBACK, 60),
        ],
    )
    def test_defaults(self, memory_cache: CacheManager, category: TTLCategory, seconds: int) -> None:
        assert memory_cache.ttl_for(category) == seconds

    def test_string_category(self, memory_cache: CacheManager) -> None:
        assert memory_cache.ttl_for("relationships") == 3600

    def test_unknown_category(self, memory_cache: CacheManager) -> None:
        with pytest.raises(ValueError):
            memory_cache.ttl_for("forever")

    def test_fallback_ttl_must_be_shorter(self) -> None:
        with pytest.raises(ValueError, match="ttl_search_fallback"):
            CacheSettings(ttl_search=60, ttl_search_fallback=60)

    def test_statistics_ttl_must_be_longest(self) -> None:
        with pytest.raises(ValueError, match="ttl_statistics"):
            CacheSettings(ttl_statistics=100)


# ══════════════════════════════════════════════════════════════════════════════
# Memory backend
# ══════════════════════════════════════════════════════════════════════════════


class TestMemoryBackend:
    async def test_set_get(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("k", {"hits": [1, 2]}, TTLCategory.SEARCH)
        assert await memory_cache.get("k") == {"hits": [1, 2]}

    async def test_values_stored_in_json_form(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("k", {"ids": (1, 2)}, 60)
        assert await memory_cache.get("k") == {"ids": [1, 2]}

    async def test_expiry_follows_category(self, memory_cache: CacheManager, clock: FakeClock) -> None:
        await memory_cache.set("primary", "p", TTLCategory.SEARCH)
        await memory_cache.set("fallback", "f", TTLCategory.SEARCH_FALLBACK)

        clock.advance(59)
        assert await memory_cache.get("fallback") == "f"
        clock.advance(1)
        assert await memory_cache.get("fallback") is None
        assert await memory_cache.get("primary") == "p"

        clock.advance(240)
        assert await memory_cache.get("primary") is None

    async def test_expired_entry_is_evicted(self, memory_cache: CacheManager, clock: FakeClock) -> None:
        await memory_cache.set("k", 1, 10)
        clock.advance(10)
        assert await memory_cache.exists("k") is False
        await memory_cache.get("k")
        assert "k" not in memory_cache._memory_cache

    async def test_last_write_wins(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("k", "first", 60)
        await memory_cache.set("k", "second", 60)
        assert await memory_cache.get("k") == "second"

    async def test_delete(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("k", 1, 60)
        await memory_cache.delete("k")
        await memory_cache.delete("never-set")
        assert await memory_cache.get("k") is None

    async def test_delete_pattern(self, memory_cache: CacheManager) -> None:
        for key in ("biblio:search::q:a", "biblio:search::q:b", "biblio:facets::q:a", "biblio:network:citation:1"):
            await memory_cache.set(key, 1, 60)
        assert await memory_cache.delete_pattern("biblio:search:*") == 2
        assert await memory_cache.exists("biblio:facets::q:a")
        assert not await memory_cache.exists("biblio:search::q:a")

    async def test_clear_namespace_only(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("biblio:a", 1, 60)
        await memory_cache.set("other:b", 1, 60)
        await memory_cache.clear()
        assert not await memory_cache.exists("biblio:a")
        assert await memory_cache.exists("other:b")

    async def test_unserializable_value_is_not_fatal(self, memory_cache: CacheManager) -> None:
        circular: list = []
        circular.append(circular)
        await memory_cache.set("k", circular, 60)
        assert await memory_cache.get("k") is None
        assert (await memory_cache.stats())["errors"] == 1


class TestGetOrSet:
    async def test_factory_called_once(self, memory_cache: CacheManager) -> None:
        calls = 0

        async def factory() -> dict:
            nonlocal calls
            calls += 1
            return {"n": calls}

        first = await memory_cache.get_or_set("k", factory, TTLCategory.LISTINGS)
        second = await memory_cache.get_or_set("k", factory, TTLCategory.LISTINGS)
        assert first == second == {"n": 1}
        assert calls == 1

    async def test_none_not_cached(self, memory_cache: CacheManager) -> None:
        factory = AsyncMock(return_value=None)
        assert await memory_cache.get_or_set("k", factory, 60) is None
        assert await memory_cache.get_or_set("k", factory, 60) is None
        assert factory.await_count == 2

    async def test_factory_errors_propagate(self, memory_cache: CacheManager) -> None:
        factory = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError, match="boom"):
            await memory_cache.get_or_set("k", factory, 60)


class TestStats:
    async def test_counters(self, memory_cache: CacheManager) -> None:
        await memory_cache.set("k", 1, 60)
        await memory_cache.get("k")
        await memory_cache.get("k")
        await memory_cache.get("missing")

        stats = await memory_cache.stats()
        assert stats["backend"] == "memory"
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.6667)
        assert stats["keys"] == 1

    async def test_empty(self, memory_cache: CacheManager) -> None:
        stats = await memory_cache.stats()
        assert stats["hit_rate"] == 0.0
        assert stats["keys"] == 0


# ══════════════════════════════════════════════════════════════════════════════
# Redis backend
# ══════════════════════════════════════════════════════════════════════════════


class TestRedisBackend:
    async def test_get_decodes_json(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.get.return_value = '{"total": 3}'
        assert await manager.get("k") == {"total": 3}

    async def test_set_uses_category_ttl(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        await manager.set("k", {"a": 1}, TTLCategory.RELATIONSHIPS)
        client.setex.assert_awaited_once_with("k", 3600, '{"a": 1}')

    async def test_get_failure_is_a_miss(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.get.side_effect = RedisConnectionError("Connection refused")
        assert await manager.get("k") is None
        stats = await manager.stats()
        assert stats["misses"] == 1
        assert stats["errors"] == 1

    async def test_set_failure_is_swallowed(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.setex.side_effect = RedisError("READONLY")
        await manager.set("k", 1, 60)

    async def test_undecodable_value_is_a_miss(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.get.return_value = "{not json"
        assert await manager.get("k") is None

    async def test_delete_failure_is_swallowed(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.delete.side_effect = RedisError("down")
        await manager.delete("k")

    async def test_stats_include_keyspace(self, redis_cache: tuple[CacheManager, AsyncMock]) -> None:
        manager, client = redis_cache
        client.info.return_value = {"keyspace_hits": 5, "keyspace_misses": 2}
        client.dbsize.return_value = 7
        stats = await manager.stats()
        assert stats["keyspace_hits"] == 5
        assert stats["keyspace_misses"] == 2
        assert stats["keys"] == 7

    async def test_unreachable_at_startup_falls_back_to_memory(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("Connection refused")
        monkeypatch.setattr(cache_module.aioredis, "from_url", lambda *args, **kwargs: client)

        manager = CacheManager(CacheSettings(backend="redis"))
        await manager.initialize()

        assert manager.backend == "memory"
        client.aclose.assert_awaited_once()
        await manager.set("k", 1, 60)
        assert await manager.get("k") == 1
