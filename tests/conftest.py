"""Shared test fixtures and configuration."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import Connection, create_engine
from sqlalchemy.ext.asyncio import AsyncEngine

from bibliosearch.adapters.base.adapter import BackendHealth, SearchBackend
from bibliosearch.adapters.relational import schema
from bibliosearch.adapters.relational.database import build_engine
from bibliosearch.cache.manager import CacheManager
from bibliosearch.config.settings import Settings
from bibliosearch.models.facet import FacetBucket
from bibliosearch.models.query import SearchQuery
from bibliosearch.models.response import EngineStatus
from bibliosearch.models.work import SearchPage, WorkHit, WorkRecord


@pytest.fixture
def settings() -> Settings:
    """Create a test Settings instance with an in-memory cache."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        debug=True,
        cache={"backend": "memory"},
        database={"url": "sqlite+aiosqlite:///:memory:"},
        search={"request_timeout": 0.5},
    )


@pytest.fixture
async def cache(settings: Settings) -> CacheManager:
    manager = CacheManager(settings.cache)
    await manager.initialize()
    return manager


# ── Sample works ──────────────────────────────────────────────────────────────


@pytest.fixture
def sample_hits() -> list[WorkHit]:
    """Hits already in engine order: relevance desc, year desc, id desc."""
    return [
        WorkHit(
            id=42,
            title="Machine Learning for Bibliographic Metadata",
            author_string="Silva, Ana; Costa, João",
            venue_name="Journal of Documentation",
            year=2023,
            work_type="ARTICLE",
            language="en",
            peer_reviewed=True,
            relevance_score=2450.0,
        ),
        WorkHit(
            id=17,
            title="Deep Learning in Digital Libraries",
            author_string="Costa, João",
            venue_name="JCDL",
            year=2021,
            work_type="CONFERENCE",
            language="en",
            peer_reviewed=True,
            relevance_score=1830.0,
        ),
        WorkHit(
            id=8,
            title="Aprendizagem de máquina em bibliotecas",
            author_string="Pereira, Rui",
            year=2019,
            work_type="THESIS",
            language="pt",
            relevance_score=1830.0,
        ),
        WorkHit(
            id=3,
            title="Learning Machines",
            year=1998,
            work_type="BOOK",
            language="en",
            relevance_score=940.0,
        ),
    ]


@pytest.fixture
def sample_record() -> WorkRecord:
    return WorkRecord(
        id=1001,
        title="Citation Networks at Scale",
        subtitle="A Case Study",
        abstract="We study citation networks built from library catalogues.",
        author_string="Silva, Ana",
        venue_name="Scientometrics",
        doi="10.1000/xyz123",
        year=2024,
        work_type="ARTICLE",
        language="en",
        peer_reviewed=True,
    )


# ── Fake backends (call counting doubles) ────────────────────────────────────


class FakeBackend(SearchBackend):
    """In-memory backend that records every call.

    ``error`` is raised by every search/facet call; ``delay`` is awaited first.
    """

    def __init__(
        self,
        name: str = "fake",
        hits: list[WorkHit] | None = None,
        facets: dict[str, list[FacetBucket]] | None = None,
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self.hits = hits or []
        self.facets = facets or {}
        self.error = error
        self.delay = delay
        self.search_calls: list[SearchQuery] = []
        self.facet_calls: list[str] = []
        self.indexed: list[WorkRecord] = []
        self.updated: list[tuple[int, dict[str, Any]]] = []

    @property
    def name(self) -> str:
        return self._name

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def search_works(self, query: SearchQuery) -> SearchPage:
        self.search_calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        window = self.hits[query.offset : query.offset + query.limit]
        return SearchPage(hits=window, total=len(self.hits), elapsed_ms=1)

    async def get_facets(self, text: str, limits: dict[str, int]) -> dict[str, list[FacetBucket]]:
        self.facet_calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {dim: buckets[: limits.get(dim, 10)] for dim, buckets in self.facets.items()}

    def map_to_hit(self, row: dict[str, Any]) -> WorkHit:
        return WorkHit(**row)

    async def health_check(self) -> BackendHealth:
        return BackendHealth(status="unhealthy" if self.error else "healthy")

    # Primary-only operations

    async def index_work(self, record: WorkRecord) -> None:
        if self.error is not None:
            raise self.error
        self.indexed.append(record)

    async def update_work(self, work_id: int, patch: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.updated.append((work_id, dict(patch)))

    async def get_status(self) -> EngineStatus:
        if self.error is not None:
            return EngineStatus(connected=False, error=str(self.error))
        return EngineStatus(connected=True, state="connected", client_queries=len(self.search_calls))


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    """Factory for call-counting fake backends."""
    return FakeBackend


# ── Relational store (in-memory SQLite) ──────────────────────────────────────

SEED_WORKS = [
    {"id": 1, "title": "Machine Learning for Bibliographic Metadata", "subtitle": None,
     "abstract": "We apply machine learning to catalogue records.", "work_type": "ARTICLE", "language": "en"},
    {"id": 2, "title": "Learning Machines", "subtitle": None, "abstract": None, "work_type": "BOOK", "language": "en"},
    {"id": 3, "title": "Deep Learning in Digital Libraries", "subtitle": "A Machine Learning Survey",
     "abstract": "Neural networks for libraries.", "work_type": "CONFERENCE", "language": "en"},
    {"id": 4, "title": "Aprendizagem de máquina", "subtitle": None,
     "abstract": "Machine learning em bibliotecas.", "work_type": "THESIS", "language": "pt"},
    {"id": 5, "title": "100% Pure Discount_Codes", "subtitle": None, "abstract": "Wildcards in titles.",
     "work_type": "ARTICLE", "language": "en"},
    {"id": 6, "title": "Graph Theory", "subtitle": None, "abstract": "Citation networks.",
     "work_type": "ARTICLE", "language": "unknown"},
]  # fmt: skip

SEED_PUBLICATIONS = [
    {"id": 1, "work_id": 1, "year": 2023, "doi": "10.1108/jd-01", "venue_name": "Journal of Documentation", "peer_reviewed": True},
    {"id": 2, "work_id": 2, "year": 1998, "doi": None, "venue_name": "MIT Press", "peer_reviewed": False},
    {"id": 3, "work_id": 3, "year": 2021, "doi": None, "venue_name": "JCDL", "peer_reviewed": True},
    {"id": 4, "work_id": 4, "year": 2019, "doi": None, "venue_name": None, "peer_reviewed": False},
    {"id": 5, "work_id": 5, "year": 2020, "doi": None, "venue_name": "Journal of Documentation", "peer_reviewed": False},
    {"id": 6, "work_id": 6, "year": None, "doi": None, "venue_name": None, "peer_reviewed": False},
    # A later preprint of work 1; the first publication stays the record of reference
    {"id": 7, "work_id": 1, "year": 2024, "doi": None, "venue_name": "arXiv", "peer_reviewed": False},
]  # fmt: skip

SEED_AUTHOR_SUMMARY = [
    {"work_id": 1, "author_string": "Silva, Ana; Costa, João", "first_author_id": 10},
    {"work_id": 2, "author_string": "Silva, Ana", "first_author_id": 10},
    {"work_id": 3, "author_string": "Costa, João", "first_author_id": 11},
    {"work_id": 4, "author_string": "Pereira, Rui", "first_author_id": 12},
]

SEED_PERSONS = [
    {"id": 10, "preferred_name": "Silva, Ana"},
    {"id": 11, "preferred_name": "Costa, João"},
    {"id": 12, "preferred_name": "Pereira, Rui"},
    {"id": 13, "preferred_name": "Lima, Eva"},
]

SEED_AUTHORSHIPS = [
    {"id": 1, "work_id": 1, "person_id": 10, "role": "AUTHOR", "position": 1},
    {"id": 2, "work_id": 1, "person_id": 11, "role": "AUTHOR", "position": 2},
    {"id": 3, "work_id": 3, "person_id": 11, "role": "AUTHOR", "position": 1},
    {"id": 4, "work_id": 3, "person_id": 10, "role": "AUTHOR", "position": 2},
    {"id": 5, "work_id": 4, "person_id": 12, "role": "AUTHOR", "position": 1},
    {"id": 6, "work_id": 4, "person_id": 11, "role": "ADVISOR", "position": 2},
    {"id": 7, "work_id": 2, "person_id": 10, "role": "AUTHOR", "position": 1},
    {"id": 8, "work_id": 2, "person_id": 13, "role": "AUTHOR", "position": 2},
    {"id": 9, "work_id": 5, "person_id": None, "role": "AUTHOR", "position": 1},
]

# 1 cites 2 twice (duplicate rows), plus one self-citation that never becomes an edge.
SEED_CITATIONS = [
    {"id": 1, "citing_work_id": 1, "cited_work_id": 2},
    {"id": 2, "citing_work_id": 1, "cited_work_id": 3},
    {"id": 3, "citing_work_id": 3, "cited_work_id": 2},
    {"id": 4, "citing_work_id": 4, "cited_work_id": 1},
    {"id": 5, "citing_work_id": 2, "cited_work_id": 6},
    {"id": 6, "citing_work_id": 1, "cited_work_id": 1},
    {"id": 7, "citing_work_id": 1, "cited_work_id": 2},
]


def _seed(conn: Connection) -> None:
    schema.metadata.create_all(conn)
    conn.execute(schema.works.insert(), SEED_WORKS)
    conn.execute(schema.publications.insert(), SEED_PUBLICATIONS)
    conn.execute(schema.persons.insert(), SEED_PERSONS)
    conn.execute(schema.work_author_summary.insert(), SEED_AUTHOR_SUMMARY)
    conn.execute(schema.authorships.insert(), SEED_AUTHORSHIPS)
    conn.execute(schema.citations.insert(), SEED_CITATIONS)


@pytest.fixture
async def db_engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite store with a small seeded catalogue."""
    engine = build_engine(settings.database)
    async with engine.begin() as conn:
        await conn.run_sync(_seed)
    yield engine
    await engine.dispose()


@pytest.fixture
def sqlite_file(tmp_path: Path) -> str:
    """Seeded SQLite file; returns its async URL."""
    path = tmp_path / "biblio.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        _seed(conn)
    engine.dispose()
    return f"sqlite+aiosqlite:///{path}"
