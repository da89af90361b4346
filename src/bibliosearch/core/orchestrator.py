"""Search Orchestrator — primary engine first, relational fallback second, cache in front.

Request flow for ``search`` and ``facets``:
  1. Validate the request (``QueryError`` before any backend is touched)
  2. Look up the cache under the normalized request key
  3. Ask the primary engine, unless disabled or marked unhealthy
  4. On a primary failure or timeout, ask the fallback exactly once
  5. Cache the response under the TTL of the engine that produced it

Every response names the engine that served it.  A primary answer with zero
hits is a valid answer and is never retried on the fallback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from bibliosearch.adapters.base.adapter import SearchBackend
from bibliosearch.adapters.base.exceptions import (
    AdapterError,
    ConfigurationError,
    ConnectionError,
    QueryError,
    SearchUnavailableError,
)
from bibliosearch.adapters.manticore.query import normalize_match, validate_filters
from bibliosearch.cache.manager import CacheManager, TTLCategory
from bibliosearch.core.health import PrimaryHealthMonitor
from bibliosearch.models.query import Pagination, SearchFilters, SearchQuery
from bibliosearch.models.response import (
    ComparisonResponse,
    EngineName,
    EngineStatus,
    EngineTiming,
    FacetResponse,
    SearchResponse,
    ServiceStatus,
)
from bibliosearch.models.work import WorkRecord

if TYPE_CHECKING:
    from bibliosearch.adapters.manticore.adapter import ManticoreAdapter
    from bibliosearch.config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _validation_message(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"])
        parts.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(parts)


class SearchOrchestrator:
    """Routes searches between the primary engine and the fallback.

    Attributes:
        primary: Primary engine client, or None when not configured.
        fallback: Relational fallback client.
        cache: Cache manager.
        health: Primary health monitor.
    """

    def __init__(
        self,
        settings: Settings,
        primary: ManticoreAdapter | None,
        fallback: SearchBackend,
        cache: CacheManager,
        health: PrimaryHealthMonitor | None = None,
    ) -> None:
        self.settings = settings
        self.primary = primary
        self.fallback = fallback
        self.cache = cache
        self.health = health or PrimaryHealthMonitor(settings.health)

    # ── Validation ───────────────────────────────────────────────────────

    def build_query(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> SearchQuery:
        """Validate raw request parts into a ``SearchQuery``.

        Raises:
            QueryError: With a descriptive reason; no backend is called.
        """
        try:
            query = SearchQuery(
                text=text,
                filters=filters if isinstance(filters, SearchFilters) else SearchFilters(**(filters or {})),
                pagination=options if isinstance(options, Pagination) else Pagination(**(options or {})),
            )
        except ValidationError as e:
            raise QueryError(_validation_message(e)) from e
        except TypeError as e:
            raise QueryError(str(e)) from e

        validate_filters(query.filters, self.settings.search.work_types, self.settings.search.languages)
        normalize_match(query.text)
        if query.offset + query.limit > self.settings.engine.max_matches:
            raise QueryError(f"offset + limit must not exceed {self.settings.engine.max_matches}")
        return query

    # ── Routing ──────────────────────────────────────────────────────────

    def _primary_available(self) -> str | None:
        """None if the primary may be tried, else why not."""
        if self.primary is None or not self.settings.engine.enabled:
            return "primary engine disabled"
        if not self.health.allow_request():
            return "primary engine marked unhealthy"
        return None

    async def _dispatch(self, operation: str, call: Callable[[SearchBackend], Awaitable[T]]) -> tuple[T, EngineName]:
        """Run ``call`` on the primary, then once on the fallback if the primary failed."""
        timeout = self.settings.search.request_timeout
        primary_error: BaseException | str | None = self._primary_available()

        if primary_error is None and self.primary is not None:
            start = time.monotonic()
            try:
                result = await asyncio.wait_for(call(self.primary), timeout=timeout)
            except TimeoutError:
                self.health.record_failure((time.monotonic() - start) * 1000)
                primary_error = ConnectionError(f"primary engine timed out after {timeout}s")
                logger.warning("Primary %s timed out after %.1fs, using fallback", operation, timeout)
            except AdapterError as e:
                self.health.record_failure((time.monotonic() - start) * 1000)
                primary_error = e
                logger.warning("Primary %s failed, using fallback: %s", operation, e)
            else:
                self.health.record_success((time.monotonic() - start) * 1000)
                return result, EngineName.PRIMARY
        else:
            logger.debug("Skipping primary for %s: %s", operation, primary_error)

        try:
            result = await call(self.fallback)
        except AdapterError as e:
            logger.error("Fallback %s failed after primary failure (%s): %s", operation, primary_error, e)
            raise SearchUnavailableError(operation, primary_error or "not attempted", e) from e
        return result, EngineName.FALLBACK

    @staticmethod
    def _ttl(engine: EngineName) -> TTLCategory:
        return TTLCategory.SEARCH if engine is EngineName.PRIMARY else TTLCategory.SEARCH_FALLBACK

    # ── Search ───────────────────────────────────────────────────────────

    async def search(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        """Ranked search with fallback and caching.

        Raises:
            QueryError: Invalid text, filters or pagination.
            SearchUnavailableError: Both engines failed.
        """
        start = time.monotonic()
        query = self.build_query(text, filters, options)
        key = self.cache.make_key("search", "", query.cache_identity())

        cached = await self.cache.get(key)
        if cached is not None:
            response = SearchResponse.model_validate(cached)
            logger.debug("Search cache hit: %s", key)
            return response.model_copy(
                update={"cached": True, "query_time_ms": int((time.monotonic() - start) * 1000)}
            )

        page, engine = await self._dispatch("search", lambda backend: backend.search_works(query))
        response = SearchResponse(
            query=query.text,
            results=page.hits,
            total=page.total,
            limit=query.limit,
            offset=query.offset,
            engine=engine,
            query_time_ms=int((time.monotonic() - start) * 1000),
        )
        await self.cache.set(key, response.model_dump(mode="json"), self._ttl(engine))
        logger.info(
            "Search %r served by %s: %d/%d results in %d ms",
            query.text,
            engine.value,
            len(response.results),
            response.total,
            response.query_time_ms,
        )
        return response

    async def facets(self, text: str) -> FacetResponse:
        """Facet counts for a query, with the same fallback and caching rules as ``search``."""
        start = time.monotonic()
        query = self.build_query(text)
        limits = dict(self.settings.search.facet_limits)
        key = self.cache.make_key("facets", "", {"q": query.text, **limits})

        cached = await self.cache.get(key)
        if cached is not None:
            response = FacetResponse.model_validate(cached)
            return response.model_copy(
                update={"cached": True, "query_time_ms": int((time.monotonic() - start) * 1000)}
            )

        facets, engine = await self._dispatch("facets", lambda backend: backend.get_facets(query.text, limits))
        response = FacetResponse(
            query=query.text,
            facets=facets,
            engine=engine,
            query_time_ms=int((time.monotonic() - start) * 1000),
        )
        await self.cache.set(key, response.model_dump(mode="json"), self._ttl(engine))
        return response

    async def search_with_facets(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        """Search and facets issued concurrently, composed once both finish."""
        start = time.monotonic()
        outcomes = await asyncio.gather(
            self.search(text, filters, options),
            self.facets(text),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        search_response, facet_response = outcomes
        return search_response.model_copy(
            update={
                "facets": facet_response.facets,
                "query_time_ms": int((time.monotonic() - start) * 1000),
            }
        )

    async def compare(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> ComparisonResponse:
        """Run the same query on both engines, bypassing cache and health routing."""
        query = self.build_query(text, filters, options)
        timeout = self.settings.search.request_timeout

        async def timed(backend: SearchBackend | None, engine: EngineName) -> tuple[EngineTiming, float]:
            if backend is None:
                return EngineTiming(engine=engine, error="not configured"), 0.0
            start = time.monotonic()
            try:
                page = await asyncio.wait_for(backend.search_works(query), timeout=timeout)
            except (AdapterError, TimeoutError) as e:
                elapsed = (time.monotonic() - start) * 1000
                return EngineTiming(engine=engine, time_ms=int(elapsed), error=str(e) or type(e).__name__), elapsed
            elapsed = (time.monotonic() - start) * 1000
            return EngineTiming(engine=engine, results=len(page.hits), total=page.total, time_ms=int(elapsed)), elapsed

        (primary, primary_ms), (fallback, fallback_ms) = await asyncio.gather(
            timed(self.primary, EngineName.PRIMARY),
            timed(self.fallback, EngineName.FALLBACK),
        )
        ratio = None
        if primary.error is None and fallback.error is None and primary_ms > 0:
            ratio = round(fallback_ms / primary_ms, 2)
        return ComparisonResponse(query=query.text, primary=primary, fallback=fallback, speed_ratio=ratio)

    # ── Real-time index ──────────────────────────────────────────────────

    def _indexer(self) -> ManticoreAdapter:
        if self.primary is None or not self.settings.engine.enabled:
            raise ConfigurationError("Primary engine is disabled; incremental indexing needs it")
        return self.primary

    async def _invalidate_search_keys(self) -> int:
        deleted = 0
        for prefix in ("search", "facets"):
            deleted += await self.cache.delete_pattern(self.cache.make_key(prefix) + "*")
        return deleted

    async def index_work(self, record: WorkRecord) -> int:
        """Index a new work and drop cached searches; returns how many keys were dropped."""
        await self._indexer().index_work(record)
        return await self._invalidate_search_keys()

    async def update_work(self, work_id: int, patch: Mapping[str, Any]) -> int:
        """Patch an indexed work and drop cached searches; returns how many keys were dropped."""
        await self._indexer().update_work(work_id, patch)
        return await self._invalidate_search_keys()

    # ── Status ───────────────────────────────────────────────────────────

    async def status(self) -> ServiceStatus:
        if self.primary is None:
            primary = EngineStatus(error="not configured")
        else:
            primary = await self.primary.get_status()
        fallback_health = await self.fallback.health_check()
        return ServiceStatus(
            primary=primary,
            fallback_healthy=fallback_health.status == "healthy",
            health={**self.health.snapshot(), "enabled": self.settings.engine.enabled},
            cache=await self.cache.stats(),
        )
