"""Query and search request models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class SearchFilters(BaseModel):
    """Typed filters applied on top of the free-text match.

    Values are normalized here; allow-lists and numeric ranges are enforced
    by ``bibliosearch.adapters.manticore.query.validate_filters`` before any
    backend sees them.
    """

    year: int | None = Field(default=None, description="Exact publication year")
    year_from: int | None = Field(default=None, description="Earliest publication year (inclusive)")
    year_to: int | None = Field(default=None, description="Latest publication year (inclusive)")
    work_type: str | None = Field(default=None, description="Work type, e.g. ARTICLE, BOOK")
    language: str | None = Field(default=None, description="ISO 639-1 language code")
    peer_reviewed: bool | None = Field(default=None, description="Only peer reviewed (True) or not (False)")

    @field_validator("work_type")
    @classmethod
    def _upper_work_type(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else None

    @field_validator("language")
    @classmethod
    def _lower_language(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else None

    def active(self) -> dict[str, Any]:
        """Filters that are actually set, in a stable order."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class Pagination(BaseModel):
    """Result window."""

    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of results to return")
    offset: int = Field(default=0, ge=0, description="Number of results to skip")


class SearchQuery(BaseModel):
    """A validated full-text search over works."""

    text: str = Field(description="Free-text query", min_length=1, max_length=1000)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    pagination: Pagination = Field(default_factory=Pagination)

    @field_validator("text")
    @classmethod
    def _collapse_whitespace(cls, v: str) -> str:
        collapsed = " ".join(v.split())
        if not collapsed:
            raise ValueError("query text is blank")
        return collapsed

    @property
    def limit(self) -> int:
        return self.pagination.limit

    @property
    def offset(self) -> int:
        return self.pagination.offset

    def cache_identity(self) -> dict[str, Any]:
        """Normalized (text, filters, pagination) tuple used for cache keys."""
        return {
            "q": self.text,
            **self.filters.active(),
            "limit": self.pagination.limit,
            "offset": self.pagination.offset,
        }
