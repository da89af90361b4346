"""BiblioSearch Engine — composition root for the search core.

Builds every component from ``Settings`` and owns their lifecycle:
  - Cache manager (Redis or memory)
  - Primary engine client (Manticore over SphinxQL/HTTP)
  - Relational fallback client and network sources (SQLAlchemy async)
  - Search orchestrator with the primary health monitor
  - One graph builder per network kind
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncEngine

from bibliosearch.adapters.base.exceptions import AdapterError
from bibliosearch.adapters.manticore.adapter import ManticoreAdapter
from bibliosearch.adapters.relational.adapter import RelationalAdapter
from bibliosearch.adapters.relational.database import build_engine
from bibliosearch.adapters.relational.network import CitationSource, CollaborationSource
from bibliosearch.cache.manager import CacheManager
from bibliosearch.core.graph import GraphBuilder
from bibliosearch.core.health import PrimaryHealthMonitor
from bibliosearch.core.orchestrator import SearchOrchestrator
from bibliosearch.models.graph import NetworkKind, NetworkResponse
from bibliosearch.models.query import Pagination, SearchFilters
from bibliosearch.models.response import ComparisonResponse, FacetResponse, SearchResponse, ServiceStatus
from bibliosearch.models.work import WorkRecord

if TYPE_CHECKING:
    import httpx

    from bibliosearch.config.settings import Settings

logger = logging.getLogger(__name__)


class BiblioSearchEngine:
    """Entry point for search, facets, networks and operations.

    Example:
        >>> engine = BiblioSearchEngine(Settings())
        >>> await engine.initialize()
        >>> response = await engine.search("machine learning", {"year_from": 2020}, {"limit": 20})
        >>> await engine.shutdown()

    Attributes:
        settings: Application configuration.
        cache: Cache manager.
        primary: Primary engine client, None when disabled in settings.
        fallback: Relational fallback client.
        orchestrator: Primary/fallback router.
        graphs: Graph builder per network kind.
    """

    def __init__(
        self,
        settings: Settings,
        db_engine: AsyncEngine | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.cache = CacheManager(settings.cache)
        self.db_engine = db_engine or build_engine(settings.database)

        self.primary: ManticoreAdapter | None = None
        if settings.engine.enabled:
            self.primary = ManticoreAdapter(
                base_url=settings.engine.base_url,
                search_indexes=settings.engine.search_indexes,
                rt_index=settings.engine.rt_index,
                timeout=settings.engine.timeout,
                max_matches=settings.engine.max_matches,
                field_weights=settings.engine.field_weights,
                work_types=settings.search.work_types,
                languages=settings.search.languages,
                transport=transport,
            )
        self.fallback = RelationalAdapter(
            self.db_engine,
            work_types=settings.search.work_types,
            languages=settings.search.languages,
            dispose_on_shutdown=False,
        )
        self.health = PrimaryHealthMonitor(settings.health)
        self.orchestrator = SearchOrchestrator(settings, self.primary, self.fallback, self.cache, self.health)
        self.graphs: dict[NetworkKind, GraphBuilder] = {
            NetworkKind.CITATION: GraphBuilder(CitationSource(self.db_engine), self.cache, settings.graph),
            NetworkKind.COLLABORATION: GraphBuilder(
                CollaborationSource(self.db_engine, settings.graph.min_collaborations),
                self.cache,
                settings.graph,
            ),
        }

    async def initialize(self) -> None:
        """Connect the cache and both search paths.

        An unreachable backend is logged, not raised: the primary reconnects
        lazily and requests fall back (or fail) per call.
        """
        await self.cache.initialize()

        try:
            await self.fallback.initialize()
        except AdapterError as e:
            logger.error("Relational store unavailable at startup: %s", e)

        if self.primary is not None:
            try:
                await self.primary.initialize()
            except AdapterError as e:
                logger.warning("Primary engine unavailable at startup, will retry on demand: %s", e)
        else:
            logger.info("Primary engine disabled; all searches use the relational fallback")

        logger.info("BiblioSearch engine initialized")

    async def shutdown(self) -> None:
        """Gracefully shut down all components."""
        if self.primary is not None:
            await self.primary.shutdown()
        await self.cache.shutdown()
        await self.db_engine.dispose()
        logger.info("BiblioSearch engine shut down")

    async def __aenter__(self) -> BiblioSearchEngine:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ── Operations ───────────────────────────────────────────────────────

    async def search(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        return await self.orchestrator.search(text, filters, options)

    async def facets(self, text: str) -> FacetResponse:
        return await self.orchestrator.facets(text)

    async def search_with_facets(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        return await self.orchestrator.search_with_facets(text, filters, options)

    async def compare(
        self,
        text: str,
        filters: SearchFilters | Mapping[str, Any] | None = None,
        options: Pagination | Mapping[str, Any] | None = None,
    ) -> ComparisonResponse:
        return await self.orchestrator.compare(text, filters, options)

    async def network(
        self,
        seed_id: int,
        max_depth: int | None = None,
        kind: NetworkKind | str = NetworkKind.CITATION,
    ) -> NetworkResponse:
        """Bounded citation (seed = work id) or collaboration (seed = person id) network."""
        return await self.graphs[NetworkKind(kind)].network(seed_id, max_depth)

    async def index_work(self, record: WorkRecord) -> int:
        return await self.orchestrator.index_work(record)

    async def update_work(self, work_id: int, patch: Mapping[str, Any]) -> int:
        return await self.orchestrator.update_work(work_id, patch)

    async def status(self) -> ServiceStatus:
        return await self.orchestrator.status()
