"""Manticore Search adapter — Primary full-text engine over SphinxQL.

Talks to Manticore (or a SphinxQL-compatible daemon) through its HTTP SQL
endpoint (``POST /sql?mode=raw``) using ``httpx``.  Statements are built by
``bibliosearch.adapters.manticore.query``; this module owns the connection
state machine, execution, timing and result mapping.

Usage::

    adapter = ManticoreAdapter(base_url="http://localhost:9308")
    await adapter.initialize()
    page = await adapter.search_works(SearchQuery(text="machine learning"))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx

from bibliosearch.adapters.base.adapter import BackendHealth, SearchBackend
from bibliosearch.adapters.base.exceptions import (
    AdapterError,
    ConnectionError,
    QueryExecutionError,
)
from bibliosearch.adapters.manticore import query as sphinxql
from bibliosearch.config.settings import DEFAULT_LANGUAGES, DEFAULT_WORK_TYPES
from bibliosearch.models.facet import FACET_DIMENSIONS, FacetBucket, merge_first_authors
from bibliosearch.models.query import SearchQuery
from bibliosearch.models.response import EngineStatus
from bibliosearch.models.work import SearchPage, WorkHit, WorkRecord

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle of the engine connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ManticoreAdapter(SearchBackend):
    """Search backend for Manticore Search / Sphinx (SphinxQL).

    State machine: ``DISCONNECTED -> CONNECTING -> CONNECTED``, back to
    ``DISCONNECTED`` on any transport error.  Every operation calls
    ``ensure_connection()`` first; concurrent callers share one reconnect.

    Supports:
      - Ranked search with field weighting and typed filters
      - Facet aggregation (one statement per dimension, run concurrently)
      - Incremental writes into a real-time index

    Args:
        base_url: Engine HTTP URL, e.g. ``"http://localhost:9308"``.
        search_indexes: Indexes queried by searches and facets.
        rt_index: Real-time index receiving incremental writes.
        timeout: HTTP timeout in seconds.
        max_matches: Engine ``max_matches`` option.
        field_weights: Ranking weight per full-text field.
        work_types: Allowed ``work_type`` filter values.
        languages: Allowed ``language`` filter values.
        transport: Optional ``httpx`` transport (tests, proxies).
        **kwargs: Extra keyword arguments stored for future use.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:9308",
        search_indexes: Iterable[str] = ("works", "works_rt"),
        rt_index: str = "works_rt",
        timeout: float = 10.0,
        max_matches: int = 1000,
        field_weights: Mapping[str, int] | None = None,
        work_types: Iterable[str] | None = None,
        languages: Iterable[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._search_indexes = list(search_indexes)
        self._rt_index = rt_index
        self._timeout = timeout
        self._max_matches = max_matches
        self._field_weights = dict(field_weights) if field_weights else None
        self._work_types = list(work_types or DEFAULT_WORK_TYPES)
        self._languages = list(languages or DEFAULT_LANGUAGES)
        self._transport = transport
        self._extra_kwargs = kwargs

        self._client: httpx.AsyncClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_lock = asyncio.Lock()
        self._known_indexes: list[str] = []

        # Client-side counters for get_status()
        self._query_count = 0
        self._latency_total_ms = 0.0
        self._connect_count = 0

    @property
    def name(self) -> str:
        return "manticore"

    @property
    def state(self) -> ConnectionState:
        return self._state

    # ── Connection lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        """Connect eagerly at startup."""
        await self.connect()

    async def connect(self) -> None:
        """Handshake with the engine and probe it before declaring it connected.

        Raises:
            ConnectionError: If the handshake or the liveness probe fails.
        """
        async with self._connect_lock:
            await self._connect_locked()

    async def ensure_connection(self) -> None:
        """Reconnect lazily if the last transport error dropped the connection."""
        if self._state is ConnectionState.CONNECTED:
            return
        async with self._connect_lock:
            # Another caller may have reconnected while we waited
            if self._state is ConnectionState.CONNECTED:
                return
            await self._connect_locked()

    async def _connect_locked(self) -> None:
        self._state = ConnectionState.CONNECTING
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )

        try:
            resp = await self._client.get("/")
            resp.raise_for_status()
            tables = await self._execute("SHOW TABLES")
        except (httpx.HTTPError, AdapterError) as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("Failed to connect to Manticore at %s: %s", self._base_url, e)
            raise ConnectionError(f"Failed to connect to Manticore at {self._base_url}: {e}") from e

        self._known_indexes = [str(row.get("Index") or row.get("Table") or "") for row in tables]
        self._state = ConnectionState.CONNECTED
        self._connect_count += 1
        logger.info(
            "Connected to Manticore at %s (%d indexes: %s)",
            self._base_url,
            len(self._known_indexes),
            ", ".join(self._known_indexes),
        )

    async def shutdown(self) -> None:
        """Close the HTTP client."""
        async with self._connect_lock:
            if self._client:
                await self._client.aclose()
                self._client = None
            self._state = ConnectionState.DISCONNECTED

    # ── Execution ────────────────────────────────────────────────────────

    async def _execute(self, sql: str) -> list[dict[str, Any]]:
        """Send one statement and return the rows of its result set."""
        if self._client is None:
            raise ConnectionError("Manticore client not initialized.")

        resp = await self._client.post("/sql", params={"mode": "raw"}, data={"query": sql})
        try:
            payload = resp.json()
        except ValueError as e:
            raise QueryExecutionError(f"Manticore returned a non-JSON response (HTTP {resp.status_code})") from e

        result = payload[0] if isinstance(payload, list) and payload else payload
        if resp.status_code >= 400:
            message = result.get("error") if isinstance(result, dict) else None
            raise QueryExecutionError(f"Manticore returned HTTP {resp.status_code}: {message or resp.text}")
        if not isinstance(result, dict):
            raise QueryExecutionError(f"Unexpected Manticore response: {payload!r}")
        if result.get("error"):
            raise QueryExecutionError(f"Manticore query failed: {result['error']}")
        return list(result.get("data") or [])

    async def _query(self, sql: str) -> list[dict[str, Any]]:
        """Run a statement on a live connection, tracking latency.

        Transport failures drop the connection state so the next call reconnects.
        """
        await self.ensure_connection()
        start = time.monotonic()
        try:
            return await self._execute(sql)
        except httpx.TransportError as e:
            self._state = ConnectionState.DISCONNECTED
            logger.warning("Manticore transport error, marking connection lost: %s", e)
            raise ConnectionError(f"Manticore request failed: {e}") from e
        finally:
            self._query_count += 1
            self._latency_total_ms += (time.monotonic() - start) * 1000

    # ── Search ───────────────────────────────────────────────────────────

    async def search_works(self, query: SearchQuery) -> SearchPage:
        """Ranked page of works; the total comes from a concurrent ``COUNT(*)``."""
        search_sql = sphinxql.build_search_sql(
            query,
            self._search_indexes,
            work_types=self._work_types,
            languages=self._languages,
            max_matches=self._max_matches,
            field_weights=self._field_weights,
        )
        count_sql = sphinxql.build_count_sql(
            query,
            self._search_indexes,
            work_types=self._work_types,
            languages=self._languages,
        )

        start = time.monotonic()
        rows, count_rows = await self._gather_all(self._query(search_sql), self._query(count_sql))
        elapsed_ms = int((time.monotonic() - start) * 1000)

        hits = [self.map_to_hit(row) for row in rows]
        total = _to_int(count_rows[0].get("total")) if count_rows else len(hits)
        # The index may change between the two statements
        total = max(total, query.offset + len(hits))

        logger.info(
            "Manticore search completed: %r -> %d hits of %d in %d ms (%d filters)",
            query.text,
            len(hits),
            total,
            elapsed_ms,
            len(query.filters.active()),
        )
        return SearchPage(hits=hits, total=total, elapsed_ms=elapsed_ms)

    async def get_facets(self, text: str, limits: dict[str, int]) -> dict[str, list[FacetBucket]]:
        """One aggregation per dimension, issued concurrently; any failure fails the call."""
        dimensions = list(FACET_DIMENSIONS)
        statements = []
        for dimension in dimensions:
            limit = limits.get(dimension, 10)
            # Several author strings collapse onto one first author
            fetch = limit * 3 if dimension == "authors" else limit
            statements.append(sphinxql.build_facet_sql(dimension, text, self._search_indexes, fetch))

        results = await self._gather_all(*(self._query(sql) for sql in statements))

        facets: dict[str, list[FacetBucket]] = {}
        for dimension, rows in zip(dimensions, results, strict=True):
            column = FACET_DIMENSIONS[dimension]
            limit = limits.get(dimension, 10)
            if dimension == "authors":
                facets[dimension] = merge_first_authors(
                    [(str(row.get(column) or ""), _to_int(row.get("cnt"))) for row in rows],
                    limit,
                )
            else:
                facets[dimension] = [
                    FacetBucket(
                        value=_to_int(row.get(column)) if dimension == "years" else row.get(column),
                        count=_to_int(row.get("cnt")),
                    )
                    for row in rows[:limit]
                ]
        return facets

    @staticmethod
    async def _gather_all(*aws: Any) -> list[Any]:
        """Wait for every awaitable, then raise the first failure if any."""
        results = await asyncio.gather(*aws, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    # ── Real-time index ──────────────────────────────────────────────────

    async def index_work(self, record: WorkRecord) -> None:
        """Insert a new work into the real-time index."""
        sql = sphinxql.build_insert_sql(
            self._rt_index,
            record,
            created_ts=int(time.time()),
            work_types=self._work_types,
            languages=self._languages,
        )
        await self._query(sql)
        logger.info("Work %d indexed in %s: %s", record.id, self._rt_index, record.title[:50])

    async def update_work(self, work_id: int, patch: Mapping[str, Any]) -> None:
        """Patch fields of an indexed work without a full replace."""
        sql = sphinxql.build_update_sql(
            self._rt_index,
            work_id,
            patch,
            work_types=self._work_types,
            languages=self._languages,
        )
        await self._query(sql)
        logger.info("Work %d updated in %s (fields: %s)", work_id, self._rt_index, ", ".join(patch))

    # ── Schema mapping ───────────────────────────────────────────────────

    def map_to_hit(self, row: dict[str, Any]) -> WorkHit:
        """Map a SphinxQL row to ``WorkHit``.

        Empty strings become ``None`` and a zero year means unknown.
        """
        year = _to_int(row.get("year"))
        return WorkHit(
            id=_to_int(row.get("id")),
            title=row.get("title") or "",
            subtitle=row.get("subtitle") or None,
            abstract=row.get("abstract") or None,
            author_string=row.get("author_string") or None,
            venue_name=row.get("venue_name") or None,
            doi=row.get("doi") or None,
            year=year or None,
            work_type=row.get("work_type") or None,
            language=row.get("language") or None,
            peer_reviewed=bool(_to_int(row.get("peer_reviewed"))),
            relevance_score=float(row.get("relevance") or row.get("weight()") or 0.0),
        )

    # ── Status / health ──────────────────────────────────────────────────

    async def get_status(self) -> EngineStatus:
        """Liveness plus engine-side and client-side counters. Never raises."""
        client_avg = self._latency_total_ms / self._query_count if self._query_count else 0.0
        try:
            rows = await self._query("SHOW STATUS")
        except AdapterError as e:
            logger.warning("Manticore status failed: %s", e)
            return EngineStatus(
                connected=False,
                state=self._state.value,
                client_queries=self._query_count,
                client_avg_latency_ms=round(client_avg, 2),
                client_connects=self._connect_count,
                error=str(e),
            )

        status = {str(row.get("Counter") or row.get("Variable_name")): row.get("Value") for row in rows}
        return EngineStatus(
            connected=True,
            state=self._state.value,
            uptime_seconds=_to_int(status.get("uptime")),
            engine_queries=_to_int(status.get("queries")),
            engine_avg_query_ms=round(_to_float(status.get("avg_query_wall")) * 1000, 3),
            engine_connections=_to_int(status.get("connections")),
            client_queries=self._query_count,
            client_avg_latency_ms=round(self._latency_total_ms / self._query_count, 2),
            client_connects=self._connect_count,
            indexes=list(self._known_indexes),
        )

    async def health_check(self) -> BackendHealth:
        """Probe the engine with ``SHOW TABLES``."""
        try:
            start = time.monotonic()
            rows = await self._query("SHOW TABLES")
            latency_ms = int((time.monotonic() - start) * 1000)
            missing = sorted(set(self._search_indexes) - {str(r.get("Index") or r.get("Table")) for r in rows})
            if missing:
                return BackendHealth(
                    status="degraded",
                    latency_ms=latency_ms,
                    last_check=datetime.now(UTC).isoformat(),
                    message=f"Missing indexes: {', '.join(missing)}",
                )
            return BackendHealth(
                status="healthy",
                latency_ms=latency_ms,
                last_check=datetime.now(UTC).isoformat(),
                message=f"Indexes: {', '.join(self._search_indexes)}",
            )
        except Exception as e:
            return BackendHealth(status="unhealthy", message=str(e))


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
