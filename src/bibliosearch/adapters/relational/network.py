"""Neighbour sources for network expansion over the relational store.

Each source answers two questions for ``GraphBuilder``: which edges touch a
frontier of node ids, and what metadata to attach to a set of nodes.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterator
from typing import Any

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from bibliosearch.adapters.base.exceptions import QueryExecutionError
from bibliosearch.adapters.relational.schema import authorships, citations, persons, publications, works
from bibliosearch.models.graph import NeighborEdge, NetworkKind

logger = logging.getLogger(__name__)

# Keeps IN (...) lists within driver limits.
_CHUNK_SIZE = 500


def _chunks(ids: Collection[int]) -> Iterator[list[int]]:
    ordered = sorted(ids)
    for i in range(0, len(ordered), _CHUNK_SIZE):
        yield ordered[i : i + _CHUNK_SIZE]


class CitationSource:
    """Works linked by citations, in both directions.

    Edge weight is the number of citation rows between the pair.
    """

    kind = NetworkKind.CITATION

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def neighbors(self, frontier: Collection[int]) -> list[NeighborEdge]:
        edges: list[NeighborEdge] = []
        weight = func.count().label("weight")
        try:
            async with self._engine.connect() as conn:
                for chunk in _chunks(frontier):
                    stmt = (
                        select(citations.c.citing_work_id, citations.c.cited_work_id, weight)
                        .where(
                            or_(citations.c.citing_work_id.in_(chunk), citations.c.cited_work_id.in_(chunk)),
                            citations.c.citing_work_id != citations.c.cited_work_id,
                        )
                        .group_by(citations.c.citing_work_id, citations.c.cited_work_id)
                    )
                    for citing, cited, count in (await conn.execute(stmt)).all():
                        edges.append(NeighborEdge(source=citing, target=cited, weight=float(count), relation="cites"))
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Citation lookup failed: {e}") from e
        return edges

    async def describe(self, ids: Collection[int]) -> dict[int, dict[str, Any]]:
        """Title and year per work."""
        found: dict[int, dict[str, Any]] = {}
        try:
            async with self._engine.connect() as conn:
                for chunk in _chunks(ids):
                    stmt = (
                        select(works.c.id, works.c.title, func.min(publications.c.year).label("year"))
                        .select_from(works.outerjoin(publications, publications.c.work_id == works.c.id))
                        .where(works.c.id.in_(chunk))
                        .group_by(works.c.id, works.c.title)
                    )
                    for work_id, title, year in (await conn.execute(stmt)).all():
                        found[work_id] = {"title": title, "year": year}
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Work lookup failed: {e}") from e
        return found


class CollaborationSource:
    """People who co-authored works, weighted by the number of shared works.

    Args:
        engine: Async SQLAlchemy engine.
        min_collaborations: Shared works required for an edge.
    """

    kind = NetworkKind.COLLABORATION

    def __init__(self, engine: AsyncEngine, min_collaborations: int = 2) -> None:
        self._engine = engine
        self._min_collaborations = min_collaborations

    async def neighbors(self, frontier: Collection[int]) -> list[NeighborEdge]:
        a1 = authorships.alias("a1")
        a2 = authorships.alias("a2")
        shared = func.count(distinct(a1.c.work_id))
        edges: list[NeighborEdge] = []
        try:
            async with self._engine.connect() as conn:
                for chunk in _chunks(frontier):
                    stmt = (
                        select(a1.c.person_id, a2.c.person_id, shared.label("shared"))
                        .select_from(a1.join(a2, a1.c.work_id == a2.c.work_id))
                        .where(a1.c.person_id.in_(chunk), a2.c.person_id.is_not(None), a2.c.person_id != a1.c.person_id)
                        .group_by(a1.c.person_id, a2.c.person_id)
                        .having(shared >= self._min_collaborations)
                    )
                    for person, collaborator, count in (await conn.execute(stmt)).all():
                        edges.append(
                            NeighborEdge(source=person, target=collaborator, weight=float(count), relation="collaboration")
                        )
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Collaboration lookup failed: {e}") from e
        return edges

    async def describe(self, ids: Collection[int]) -> dict[int, dict[str, Any]]:
        """Preferred name per person."""
        found: dict[int, dict[str, Any]] = {}
        try:
            async with self._engine.connect() as conn:
                for chunk in _chunks(ids):
                    stmt = select(persons.c.id, persons.c.preferred_name).where(persons.c.id.in_(chunk))
                    for person_id, name in (await conn.execute(stmt)).all():
                        found[person_id] = {"name": name}
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Person lookup failed: {e}") from e
        return found
