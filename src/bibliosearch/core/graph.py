"""Graph Builder — bounded breadth-first expansion of citation and collaboration networks.

Expansion is level by level from a seed: every level issues one neighbour
lookup for the whole frontier, so a depth-``d`` network costs at most ``d``
round trips.  Depth is clamped to a server cap and the number of returned
edges is bounded, so no request can walk an unbounded part of the graph.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Collection
from typing import Any, Protocol

from bibliosearch.cache.manager import CacheManager, TTLCategory
from bibliosearch.config.settings import GraphSettings
from bibliosearch.models.graph import (
    GraphEdge,
    GraphNode,
    NeighborEdge,
    NetworkKind,
    NetworkResponse,
    NetworkStats,
)

logger = logging.getLogger(__name__)


class NeighborSource(Protocol):
    """Where a network's edges and node metadata come from."""

    kind: NetworkKind

    async def neighbors(self, frontier: Collection[int]) -> list[NeighborEdge]:
        """Every edge with at least one endpoint in ``frontier``."""
        ...

    async def describe(self, ids: Collection[int]) -> dict[int, dict[str, Any]]:
        """Metadata per node id; unknown ids are left out."""
        ...


class GraphBuilder:
    """Builds bounded networks around a seed node.

    Attributes:
        source: Neighbour source (citations or collaborations).
        cache: Cache manager; networks are kept under the relationships TTL.
        settings: Depth and edge caps.
    """

    def __init__(self, source: NeighborSource, cache: CacheManager, settings: GraphSettings) -> None:
        self.source = source
        self.cache = cache
        self.settings = settings

    @property
    def kind(self) -> NetworkKind:
        return self.source.kind

    def effective_depth(self, requested: int | None) -> int:
        """Clamp a requested depth to ``[1, max_depth]``."""
        if requested is None:
            return self.settings.max_depth
        return min(max(int(requested), 1), self.settings.max_depth)

    def _pair(self, edge: NeighborEdge) -> tuple[int, int]:
        # Collaboration is symmetric; a citation has a direction
        if self.kind is NetworkKind.COLLABORATION:
            return (min(edge.source, edge.target), max(edge.source, edge.target))
        return (edge.source, edge.target)

    async def network(self, seed_id: int, max_depth: int | None = None) -> NetworkResponse:
        """Expand the network around ``seed_id``.

        Args:
            seed_id: Work id (citations) or person id (collaborations).
            max_depth: Requested depth; clamped to the configured cap.

        Returns:
            Nodes keyed by id with their first-reached depth, and at most
            ``max_edges`` edges ordered by depth, then weight descending.
        """
        start = time.monotonic()
        requested = max_depth if max_depth is not None else self.settings.max_depth
        depth_limit = self.effective_depth(max_depth)
        key = self.cache.make_key(
            f"network:{self.kind.value}",
            seed_id,
            {"depth": depth_limit, "edges": self.settings.max_edges},
        )

        built: list[NetworkResponse] = []

        async def build() -> dict[str, Any]:
            response = await self._expand(seed_id, requested, depth_limit, start)
            built.append(response)
            return response.model_dump(mode="json")

        payload = await self.cache.get_or_set(key, build, TTLCategory.RELATIONSHIPS)
        if built:
            return built[0]
        response = NetworkResponse.model_validate(payload)
        return response.model_copy(update={"cached": True, "requested_depth": requested})

    async def _expand(self, seed_id: int, requested: int, depth_limit: int, start: float) -> NetworkResponse:
        """Level-by-level expansion from the seed; one neighbour lookup per level."""
        node_depth: dict[int, int] = {seed_id: 0}
        edges: dict[tuple[int, int], GraphEdge] = {}
        frontier: set[int] = {seed_id}
        stopped_early = False

        for depth in range(1, depth_limit + 1):
            if not frontier:
                break
            if len(edges) >= self.settings.max_edges:
                # Lower levels already fill the cap; deeper edges would be cut anyway
                stopped_early = True
                break

            found = await self.source.neighbors(frontier)
            next_frontier: set[int] = set()
            for neighbor in sorted(found, key=lambda e: (e.source, e.target)):
                pair = self._pair(neighbor)
                if pair in edges:
                    continue
                edges[pair] = GraphEdge(
                    source=neighbor.source,
                    target=neighbor.target,
                    depth=depth,
                    weight=neighbor.weight,
                    relation=neighbor.relation,
                )
                for node in (neighbor.source, neighbor.target):
                    if node not in node_depth:
                        node_depth[node] = depth
                        next_frontier.add(node)
            frontier = next_frontier

        ordered = sorted(edges.values(), key=lambda e: (e.depth, -e.weight, e.source, e.target))
        kept = ordered[: self.settings.max_edges]
        truncated = stopped_early or len(ordered) > len(kept)

        node_ids = {seed_id}
        for edge in kept:
            node_ids.update((edge.source, edge.target))
        metadata = await self.source.describe(node_ids)
        nodes = {
            node_id: GraphNode(
                id=node_id,
                depth=node_depth[node_id],
                is_seed=node_id == seed_id,
                metadata=metadata.get(node_id, {}),
            )
            for node_id in sorted(node_ids)
        }

        response = NetworkResponse(
            seed_id=seed_id,
            kind=self.kind,
            requested_depth=requested,
            effective_depth=depth_limit,
            nodes=nodes,
            edges=kept,
            stats=NetworkStats(
                total_nodes=len(nodes),
                total_edges=len(kept),
                max_depth=max((e.depth for e in kept), default=0),
                truncated=truncated,
            ),
        )
        logger.info(
            "%s network for %d: %d nodes, %d edges, depth %d/%d%s in %d ms",
            self.kind.value.capitalize(),
            seed_id,
            len(nodes),
            len(kept),
            response.stats.max_depth,
            depth_limit,
            " (truncated)" if truncated else "",
            int((time.monotonic() - start) * 1000),
        )
        return response
