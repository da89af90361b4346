"""Cache Manager — Redis-backed caching with per-category freshness.

Provides a unified caching interface over Redis or an in-process store.
Every value is stored under a TTL taken from its ``TTLCategory``; cache
failures degrade to misses and are never surfaced to callers.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bibliosearch.adapters.base.exceptions import CacheUnavailableError
from bibliosearch.config.settings import CacheSettings

logger = logging.getLogger(__name__)


class TTLCategory(str, Enum):
    """Freshness class of a cached value."""

    STATISTICS = "statistics"
    LISTINGS = "listings"
    RELATIONSHIPS = "relationships"
    SEARCH = "search"
    SEARCH_FALLBACK = "search_fallback"


@dataclass
class CacheEntry:
    """A value held by the memory backend until ``expires_at`` (monotonic seconds)."""

    key: str
    value: Any
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheManager:
    """Manages caching for search results, facets and networks.

    Supports Redis and in-memory backends with a configurable TTL
    per freshness category.  Writes are last-write-wins.

    Attributes:
        settings: Cache configuration.
    """

    def __init__(self, settings: CacheSettings, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings
        self._client: Any = None
        self._memory_cache: dict[str, CacheEntry] = {}
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @property
    def backend(self) -> str:
        return self.settings.backend

    async def initialize(self) -> None:
        """Initialize the cache backend."""
        if self.settings.backend == "redis":
            try:
                self._client = aioredis.from_url(
                    self.settings.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=self.settings.connect_timeout,
                    socket_timeout=self.settings.connect_timeout,
                )
                # Test connection
                await self._client.ping()
                logger.info(
                    "Connected to Redis cache at %s:%d/%d",
                    self.settings.redis_host,
                    self.settings.redis_port,
                    self.settings.redis_db,
                )
            except (RedisError, OSError):
                logger.warning("Failed to connect to Redis, falling back to memory cache", exc_info=True)
                if self._client is not None:
                    await self._client.aclose()
                self._client = None
                self.settings.backend = "memory"
        else:
            logger.info("Using in-memory cache backend")

    async def shutdown(self) -> None:
        """Close cache connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ── Keys and TTLs ────────────────────────────────────────────────────

    def ttl_for(self, category: TTLCategory | str) -> int:
        """Seconds a value of ``category`` stays fresh."""
        return int(getattr(self.settings, f"ttl_{TTLCategory(category).value}"))

    def make_key(self, prefix: str, identifier: str | int = "", params: Mapping[str, Any] | None = None) -> str:
        """Build a namespaced key; params are sorted so their order never matters.

        Example:
            ``make_key("search", "", {"q": "ai", "limit": 20})`` ->
            ``"biblio:search::limit:20|q:ai"``
        """
        parts = [self.settings.key_prefix, prefix, str(identifier)]
        if params:
            parts.append("|".join(f"{k}:{_key_value(v)}" for k, v in sorted(params.items())))
        return ":".join(parts)

    # ── Operations ───────────────────────────────────────────────────────

    async def get(self, key: str) -> Any | None:
        """Retrieve a value from cache.

        Args:
            key: Cache key.

        Returns:
            Cached value, or None if missing, expired or the backend failed.
        """
        try:
            value = await self._get(key)
        except CacheUnavailableError as e:
            self._errors += 1
            logger.warning("Cache get failed for key %s, treating as miss: %s", key, e)
            value = None
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | TTLCategory) -> None:
        """Store a value in cache.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            ttl: Time-to-live in seconds, or a category whose TTL applies.
        """
        seconds = self.ttl_for(ttl) if isinstance(ttl, TTLCategory) else int(ttl)
        try:
            await self._set(key, value, seconds)
        except CacheUnavailableError as e:
            self._errors += 1
            logger.warning("Cache set failed for key %s: %s", key, e)

    async def delete(self, key: str) -> None:
        """Delete a value from cache.

        Args:
            key: Cache key to delete.
        """
        try:
            if self._redis_active():
                await self._client.delete(key)
            else:
                self._memory_cache.pop(key, None)
        except (RedisError, OSError) as e:
            self._errors += 1
            logger.warning("Cache delete failed for key %s: %s", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns how many were removed."""
        try:
            if self._redis_active():
                deleted = 0
                batch: list[str] = []
                async for key in self._client.scan_iter(match=pattern, count=500):
                    batch.append(key)
                    if len(batch) >= 500:
                        deleted += await self._client.delete(*batch)
                        batch = []
                if batch:
                    deleted += await self._client.delete(*batch)
            else:
                matched = [k for k in self._memory_cache if fnmatch.fnmatchcase(k, pattern)]
                for key in matched:
                    del self._memory_cache[key]
                deleted = len(matched)
        except (RedisError, OSError) as e:
            self._errors += 1
            logger.warning("Cache pattern delete failed for %s: %s", pattern, e)
            return 0
        logger.debug("Deleted %d cache keys matching %s", deleted, pattern)
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            if self._redis_active():
                return bool(await self._client.exists(key))
            entry = self._memory_cache.get(key)
            return entry is not None and not entry.expired(self._clock())
        except (RedisError, OSError) as e:
            self._errors += 1
            logger.warning("Cache exists failed for key %s: %s", key, e)
            return False

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: int | TTLCategory,
    ) -> Any:
        """Return the cached value, or compute, store and return it.

        ``None`` results are returned but not cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def clear(self) -> None:
        """Clear every key of this cache's namespace."""
        await self.delete_pattern(f"{self.settings.key_prefix}:*")

    async def stats(self) -> dict[str, Any]:
        """Hit/miss counters of this process, plus Redis keyspace info when available."""
        lookups = self._hits + self._misses
        stats: dict[str, Any] = {
            "backend": self.settings.backend,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }
        if self._redis_active():
            try:
                info = await self._client.info("stats")
                stats["keyspace_hits"] = int(info.get("keyspace_hits", 0))
                stats["keyspace_misses"] = int(info.get("keyspace_misses", 0))
                stats["keys"] = int(await self._client.dbsize())
            except (RedisError, OSError) as e:
                logger.warning("Cache stats unavailable: %s", e)
                stats["error"] = str(e)
        else:
            now = self._clock()
            stats["keys"] = sum(1 for entry in self._memory_cache.values() if not entry.expired(now))
        return stats

    # ── Backends ─────────────────────────────────────────────────────────

    def _redis_active(self) -> bool:
        return self.settings.backend == "redis" and self._client is not None

    async def _get(self, key: str) -> Any | None:
        if self._redis_active():
            try:
                raw = await self._client.get(key)
            except (RedisError, OSError) as e:
                raise CacheUnavailableError(str(e)) from e
            if raw is None:
                return None
            try:
                return json.loads(raw)
            except ValueError as e:
                raise CacheUnavailableError(f"undecodable value: {e}") from e

        entry = self._memory_cache.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._memory_cache[key]
            return None
        return entry.value

    async def _set(self, key: str, value: Any, ttl: int) -> None:
        # Both backends hold the JSON form so a memory hit equals a Redis hit
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise CacheUnavailableError(f"unserializable value: {e}") from e

        if self._redis_active():
            try:
                await self._client.setex(key, ttl, serialized)
            except (RedisError, OSError) as e:
                raise CacheUnavailableError(str(e)) from e
            return

        self._memory_cache[key] = CacheEntry(key=key, value=json.loads(serialized), expires_at=self._clock() + ttl)


def _key_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Enum):
        return str(value.value)
    # Escapes ":" and "|" so a value can never imitate another param
    return quote(str(value), safe="")
