"""Relational adapter — Fallback search over the source-of-truth database.

Uses SQLAlchemy Core on an async engine.  Matching is substring based
(``LIKE`` through bind parameters with wildcard autoescaping) rather than
full-text, so it is slower and coarser than the primary engine, but it
returns the same ``SearchPage`` shape in the same order.

Usage::

    adapter = RelationalAdapter(build_engine(settings.database))
    await adapter.initialize()
    page = await adapter.search_works(SearchQuery(text="machine learning"))
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, case, distinct, func, not_, or_, select
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bibliosearch.adapters.base.adapter import BackendHealth, SearchBackend
from bibliosearch.adapters.base.exceptions import ConnectionError, QueryError, QueryExecutionError
from bibliosearch.adapters.manticore.query import strip_control_chars, validate_filters
from bibliosearch.adapters.relational.schema import publications, work_author_summary, works
from bibliosearch.config.settings import DEFAULT_LANGUAGES, DEFAULT_WORK_TYPES
from bibliosearch.models.facet import FACET_DIMENSIONS, FacetBucket, merge_first_authors
from bibliosearch.models.query import SearchFilters, SearchQuery
from bibliosearch.models.work import SearchPage, WorkHit

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r'[-!]?"[^"]*"|[^\s"]+')
_WORD_RE = re.compile(r"\w")

# Relevance weight per matched field.
_FIELD_WEIGHTS = ((works.c.title, 2), (works.c.subtitle, 1), (works.c.abstract, 1))


def parse_terms(text: str) -> tuple[list[str], list[str]]:
    """Split free text into lower-cased (required, excluded) substring terms.

    Quoted phrases stay one term; ``-term``, ``!term`` and ``NOT term``
    exclude.  Boolean words, grouping and wildcards carry no meaning here.

    Raises:
        QueryError: If no required term is left.
    """
    cleaned = strip_control_chars(text)
    if cleaned.count('"') % 2:
        cut = cleaned.rfind('"')
        cleaned = cleaned[:cut] + " " + cleaned[cut + 1 :]

    include: list[str] = []
    exclude: list[str] = []
    negate_next = False
    for raw in _TERM_RE.findall(cleaned):
        if raw in ("AND", "OR", "|"):
            continue
        if raw == "NOT":
            negate_next = True
            continue

        negated = negate_next
        negate_next = False
        body = raw if raw.lstrip("-!").startswith('"') else raw.strip("()")
        if len(body) > 1 and body[0] in "-!":
            negated = True
            body = body[1:]
        if body.startswith('"'):
            term = " ".join(body.strip('"').split())
        else:
            term = body.strip("()*")

        term = term.lower()
        if not _WORD_RE.search(term):
            continue
        bucket = exclude if negated else include
        if term not in bucket:
            bucket.append(term)

    if not include:
        raise QueryError("query must contain at least one term that is not negated")
    return include, exclude


class RelationalAdapter(SearchBackend):
    """Search backend over the relational store.

    Args:
        engine: Async SQLAlchemy engine (pooled).
        work_types: Allowed ``work_type`` filter values.
        languages: Allowed ``language`` filter values.
        dispose_on_shutdown: Dispose the engine in ``shutdown()``.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        work_types: Iterable[str] | None = None,
        languages: Iterable[str] | None = None,
        dispose_on_shutdown: bool = True,
    ) -> None:
        self._engine = engine
        self._work_types = list(work_types or DEFAULT_WORK_TYPES)
        self._languages = list(languages or DEFAULT_LANGUAGES)
        self._dispose_on_shutdown = dispose_on_shutdown
        # One publication per work (the lowest id), so every work is one row
        first_publication = (
            select(publications.c.work_id, func.min(publications.c.id).label("publication_id"))
            .group_by(publications.c.work_id)
            .subquery("first_publication")
        )
        self._joined = (
            works.outerjoin(first_publication, first_publication.c.work_id == works.c.id)
            .outerjoin(publications, publications.c.id == first_publication.c.publication_id)
            .outerjoin(work_author_summary, work_author_summary.c.work_id == works.c.id)
        )

    @property
    def name(self) -> str:
        return "relational"

    async def initialize(self) -> None:
        """Check that the database answers."""
        async with self._connection() as conn:
            await conn.execute(select(1))
        logger.info("Relational fallback ready (%s)", self._engine.dialect.name)

    async def shutdown(self) -> None:
        if self._dispose_on_shutdown:
            await self._engine.dispose()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        """Borrow a pooled connection, translating driver errors."""
        try:
            async with self._engine.connect() as conn:
                yield conn
        except (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError) as e:
            raise ConnectionError(f"Relational store unavailable: {e}") from e
        except (DBAPIError, SQLAlchemyError) as e:
            raise QueryExecutionError(f"Relational query failed: {e}") from e

    # ── Predicates ───────────────────────────────────────────────────────

    @staticmethod
    def _field_matches(term: str) -> list[Any]:
        return [func.lower(column).contains(term, autoescape=True) for column, _ in _FIELD_WEIGHTS]

    def _match_conditions(self, include: list[str], exclude: list[str]) -> list[Any]:
        conditions = [or_(*self._field_matches(term)) for term in include]
        # NULL columns must not hide a work from an exclusion
        for term in exclude:
            conditions.append(
                not_(
                    or_(
                        *(
                            func.lower(func.coalesce(column, "")).contains(term, autoescape=True)
                            for column, _ in _FIELD_WEIGHTS
                        )
                    )
                )
            )
        return conditions

    def _filter_conditions(self, filters: SearchFilters) -> list[Any]:
        validate_filters(filters, self._work_types, self._languages)
        conditions: list[Any] = []
        if filters.year is not None:
            conditions.append(publications.c.year == filters.year)
        if filters.year_from is not None:
            conditions.append(publications.c.year >= filters.year_from)
        if filters.year_to is not None:
            conditions.append(publications.c.year <= filters.year_to)
        if filters.work_type is not None:
            conditions.append(works.c.work_type == filters.work_type)
        if filters.language is not None:
            conditions.append(works.c.language == filters.language)
        if filters.peer_reviewed is not None:
            conditions.append(publications.c.peer_reviewed.is_(filters.peer_reviewed))
        return conditions

    @staticmethod
    def _relevance(include: list[str]) -> Any:
        score: Any = None
        for term in include:
            for column, weight in _FIELD_WEIGHTS:
                part = case((func.lower(column).contains(term, autoescape=True), weight), else_=0)
                score = part if score is None else score + part
        return score

    # ── Search ───────────────────────────────────────────────────────────

    async def search_works(self, query: SearchQuery) -> SearchPage:
        """Substring search with the primary's ordering: relevance, year, id (all descending)."""
        include, exclude = parse_terms(query.text)
        where = and_(*self._match_conditions(include, exclude), *self._filter_conditions(query.filters))
        relevance = self._relevance(include).label("relevance")

        stmt = (
            select(
                works.c.id,
                works.c.title,
                works.c.subtitle,
                works.c.abstract,
                work_author_summary.c.author_string,
                publications.c.venue_name,
                publications.c.doi,
                publications.c.year,
                works.c.work_type,
                works.c.language,
                publications.c.peer_reviewed,
                relevance,
            )
            .select_from(self._joined)
            .where(where)
            .order_by(relevance.desc(), func.coalesce(publications.c.year, 0).desc(), works.c.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        count_stmt = select(func.count(works.c.id)).select_from(self._joined).where(where)

        start = time.monotonic()
        async with self._connection() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
            total = int((await conn.execute(count_stmt)).scalar_one() or 0)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        hits = [self.map_to_hit(dict(row)) for row in rows]
        logger.info(
            "Relational search completed: %r -> %d hits of %d in %d ms",
            query.text,
            len(hits),
            total,
            elapsed_ms,
        )
        return SearchPage(hits=hits, total=total, elapsed_ms=elapsed_ms)

    async def get_facets(self, text: str, limits: dict[str, int]) -> dict[str, list[FacetBucket]]:
        """Same dimensions as the primary, counted with ``GROUP BY``."""
        include, exclude = parse_terms(text)
        match = self._match_conditions(include, exclude)

        # dimension -> (column, extra condition, ascending tie-break)
        specs: dict[str, tuple[Any, Any, bool]] = {
            "years": (publications.c.year, publications.c.year > 0, False),
            "work_types": (works.c.work_type, works.c.work_type.is_not(None), True),
            "languages": (works.c.language, and_(works.c.language.is_not(None), works.c.language != "unknown"), True),
            "venues": (publications.c.venue_name, and_(publications.c.venue_name.is_not(None), publications.c.venue_name != ""), True),
            "authors": (
                work_author_summary.c.author_string,
                and_(work_author_summary.c.author_string.is_not(None), work_author_summary.c.author_string != ""),
                True,
            ),
        }  # fmt: skip

        facets: dict[str, list[FacetBucket]] = {}
        async with self._connection() as conn:
            for dimension in FACET_DIMENSIONS:
                column, condition, ascending = specs[dimension]
                limit = limits.get(dimension, 10)
                cnt = func.count(distinct(works.c.id)).label("cnt")
                stmt = (
                    select(column.label("value"), cnt)
                    .select_from(self._joined)
                    .where(*match, condition)
                    .group_by(column)
                    .order_by(cnt.desc(), column.asc() if ascending else column.desc())
                    .limit(limit * 3 if dimension == "authors" else limit)
                )
                rows = (await conn.execute(stmt)).all()
                if dimension == "authors":
                    facets[dimension] = merge_first_authors([(str(v), int(c)) for v, c in rows], limit)
                else:
                    facets[dimension] = [FacetBucket(value=v, count=int(c)) for v, c in rows]
        return facets

    # ── Schema mapping ───────────────────────────────────────────────────

    def map_to_hit(self, row: dict[str, Any]) -> WorkHit:
        return WorkHit(
            id=int(row["id"]),
            title=row.get("title") or "",
            subtitle=row.get("subtitle") or None,
            abstract=row.get("abstract") or None,
            author_string=row.get("author_string") or None,
            venue_name=row.get("venue_name") or None,
            doi=row.get("doi") or None,
            year=row.get("year") or None,
            work_type=row.get("work_type") or None,
            language=row.get("language") or None,
            peer_reviewed=bool(row.get("peer_reviewed")),
            relevance_score=float(row.get("relevance") or 0),
        )

    async def health_check(self) -> BackendHealth:
        try:
            start = time.monotonic()
            async with self._connection() as conn:
                await conn.execute(select(1))
            return BackendHealth(
                status="healthy",
                latency_ms=int((time.monotonic() - start) * 1000),
                last_check=datetime.now(UTC).isoformat(),
                message=self._engine.dialect.name,
            )
        except Exception as e:
            return BackendHealth(status="unhealthy", message=str(e))
