"""Response models — What the orchestrator hands to callers."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bibliosearch.models.facet import FacetBucket
from bibliosearch.models.work import WorkHit


class EngineName(str, Enum):
    """Provenance of a result set."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


class SearchResponse(BaseModel):
    """Search results tagged with the engine that produced them."""

    query: str = Field(description="Normalized query text")
    results: list[WorkHit] = Field(default_factory=list)
    total: int = Field(default=0, ge=0, description="Total matching works (>= len(results))")
    limit: int = Field(description="Requested page size")
    offset: int = Field(description="Requested offset")
    engine: EngineName = Field(description="Engine that produced the results")
    query_time_ms: int = Field(default=0, ge=0, description="Time spent producing this response")
    cached: bool = Field(default=False, description="Served from cache")
    facets: dict[str, list[FacetBucket]] | None = Field(default=None, description="Facets, when requested")


class FacetResponse(BaseModel):
    """Facet counts for one query."""

    query: str
    facets: dict[str, list[FacetBucket]] = Field(default_factory=dict)
    engine: EngineName
    query_time_ms: int = 0
    cached: bool = False


class EngineStatus(BaseModel):
    """Primary engine liveness and counters."""

    connected: bool = False
    state: str = "disconnected"
    uptime_seconds: int = 0
    engine_queries: int = Field(default=0, description="Queries served by the engine since start")
    engine_avg_query_ms: float = Field(default=0.0, description="Engine-reported average query time")
    engine_connections: int = Field(default=0, description="Connections accepted by the engine")
    client_queries: int = Field(default=0, description="Statements issued by this client")
    client_avg_latency_ms: float = Field(default=0.0, description="Mean round-trip latency seen by this client")
    client_connects: int = Field(default=0, description="Successful (re)connects by this client")
    indexes: list[str] = Field(default_factory=list)
    error: str | None = None


class EngineTiming(BaseModel):
    """One side of an engine comparison."""

    engine: EngineName
    results: int = 0
    total: int = 0
    time_ms: int = 0
    error: str | None = None


class ComparisonResponse(BaseModel):
    """Primary vs fallback on the same query."""

    query: str
    primary: EngineTiming
    fallback: EngineTiming
    speed_ratio: float | None = Field(default=None, description="fallback time / primary time")


class ServiceStatus(BaseModel):
    """Aggregated operational status."""

    primary: EngineStatus
    fallback_healthy: bool
    health: dict[str, Any] = Field(default_factory=dict)
    cache: dict[str, Any] = Field(default_factory=dict)
