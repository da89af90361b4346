"""Base search backend — Abstract interface shared by the primary and fallback paths.

Every search backend must implement this interface so the orchestrator can
swap one for the other without branching at call sites.  A backend is
responsible for:
  1. Executing ranked work searches
  2. Computing facet counts for a query
  3. Mapping raw rows to the common ``WorkHit`` shape
  4. Reporting health status
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from bibliosearch.models.facet import FacetBucket
from bibliosearch.models.query import SearchQuery
from bibliosearch.models.work import SearchPage, WorkHit


class BackendHealth(BaseModel):
    """Health status of a search backend."""

    status: str = Field(description="Health status: healthy, degraded, unhealthy")
    latency_ms: int = Field(default=0, description="Latency of last health check in ms")
    last_check: str | None = Field(default=None, description="ISO timestamp of last health check")
    message: str | None = Field(default=None, description="Additional health message")


class SearchBackend(ABC):
    """Abstract base class for search backends.

    All backends must implement:
      - search_works(): Ranked, filtered, paginated search
      - get_facets(): Per-dimension counts for a query
      - map_to_hit(): Normalize a raw row to ``WorkHit``
      - health_check(): Report backend health

    Results are ordered by relevance descending, then publication year
    descending, then id descending, so identical inputs give identical pages.

    Failures raise ``ConnectionError`` (unreachable / timed out) or
    ``QueryExecutionError`` (statement failed); both are left to the caller.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique backend name (e.g., 'manticore', 'relational')."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the backend (connections, pools, etc.).

        Called once during application startup.
        """

    @abstractmethod
    async def shutdown(self) -> None:
        """Release connections and pools."""

    @abstractmethod
    async def search_works(self, query: SearchQuery) -> SearchPage:
        """Execute a ranked search.

        Args:
            query: A validated search query.

        Returns:
            The requested page of hits and the total match count.
        """

    @abstractmethod
    async def get_facets(self, text: str, limits: dict[str, int]) -> dict[str, list[FacetBucket]]:
        """Count matching works per facet dimension.

        Args:
            text: Free-text query.
            limits: Maximum buckets per dimension name.

        Returns:
            Dimension name to buckets ordered by count descending.
        """

    @abstractmethod
    def map_to_hit(self, row: dict[str, Any]) -> WorkHit:
        """Map a raw backend row to a ``WorkHit``."""

    @abstractmethod
    async def health_check(self) -> BackendHealth:
        """Check the health of the backend."""
