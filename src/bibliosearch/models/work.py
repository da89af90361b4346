"""Work models — Search hits, index records and result pages."""

from __future__ import annotations

from pydantic import BaseModel, Field


class WorkHit(BaseModel):
    """A single search hit, identical in shape for every backend."""

    id: int = Field(description="Work identifier")
    title: str = Field(default="", description="Work title")
    subtitle: str | None = Field(default=None, description="Work subtitle")
    abstract: str | None = Field(default=None, description="Abstract or excerpt")
    author_string: str | None = Field(default=None, description="Authors joined by ';'")
    venue_name: str | None = Field(default=None, description="Journal, conference or publisher")
    doi: str | None = Field(default=None, description="DOI")
    year: int | None = Field(default=None, description="Publication year")
    work_type: str | None = Field(default=None, description="Work type")
    language: str | None = Field(default=None, description="Language code")
    peer_reviewed: bool = Field(default=False, description="Peer review flag")
    relevance_score: float = Field(default=0.0, description="Backend relevance score (higher is better)")


class SearchPage(BaseModel):
    """One page of hits as returned by a backend."""

    hits: list[WorkHit] = Field(default_factory=list, description="Hits ordered by relevance")
    total: int = Field(default=0, ge=0, description="Total number of matching works")
    elapsed_ms: int = Field(default=0, ge=0, description="Backend execution time in ms")


class WorkRecord(BaseModel):
    """A work written into the real-time index."""

    id: int = Field(gt=0, description="Work identifier (shared with the relational store)")
    title: str = Field(default="", description="Work title")
    subtitle: str = Field(default="", description="Work subtitle")
    abstract: str = Field(default="", description="Abstract")
    author_string: str = Field(default="", description="Authors joined by ';'")
    venue_name: str = Field(default="", description="Venue name")
    doi: str = Field(default="", description="DOI")
    year: int = Field(default=0, ge=0, description="Publication year (0 = unknown)")
    work_type: str = Field(default="ARTICLE", description="Work type")
    language: str = Field(default="unknown", description="Language code")
    peer_reviewed: bool = Field(default=False, description="Peer review flag")
