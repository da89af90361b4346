"""Network models — Nodes and edges of citation / collaboration graphs."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NetworkKind(str, Enum):
    """Which relation a network is built from."""

    CITATION = "citation"
    COLLABORATION = "collaboration"


class GraphNode(BaseModel):
    """A work or person reached during expansion."""

    id: int = Field(description="Node identifier")
    depth: int = Field(ge=0, description="Minimum depth at which the node was first reached")
    is_seed: bool = Field(default=False, description="Whether this is the seed node")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Title/year for works, name for persons")


class GraphEdge(BaseModel):
    """A relation discovered at a given expansion depth."""

    source: int = Field(description="Source node id")
    target: int = Field(description="Target node id")
    depth: int = Field(ge=1, description="Expansion depth at which the edge was discovered")
    weight: float = Field(default=1.0, description="Relation strength")
    relation: str = Field(description="Relation kind, e.g. 'cites' or 'collaboration'")


class NeighborEdge(BaseModel):
    """A raw edge returned by a neighbour source before depth assignment."""

    source: int
    target: int
    weight: float = 1.0
    relation: str


class NetworkStats(BaseModel):
    """Summary counters of a network."""

    total_nodes: int = 0
    total_edges: int = 0
    max_depth: int = 0
    truncated: bool = Field(default=False, description="Whether edges were dropped to honour the edge cap")


class NetworkResponse(BaseModel):
    """A bounded network around a seed node."""

    seed_id: int
    kind: NetworkKind
    requested_depth: int
    effective_depth: int = Field(description="Depth actually used after clamping to the server cap")
    nodes: dict[int, GraphNode] = Field(default_factory=dict)
    edges: list[GraphEdge] = Field(default_factory=list)
    stats: NetworkStats = Field(default_factory=NetworkStats)
    cached: bool = False
