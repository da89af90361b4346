"""Facet models — Count aggregations per categorical dimension."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# Dimension name -> work column it aggregates.
FACET_DIMENSIONS: dict[str, str] = {
    "years": "year",
    "work_types": "work_type",
    "languages": "language",
    "venues": "venue_name",
    "authors": "author_string",
}


class FacetBucket(BaseModel):
    """One (value, count) pair of a facet dimension."""

    value: Any = Field(description="Dimension value")
    count: int = Field(ge=0, description="Number of matching works")


def first_author(author_string: str) -> str:
    """Return the first author of a ';'-separated author string."""
    return author_string.split(";")[0].strip()


def merge_first_authors(rows: list[tuple[str, int]], limit: int) -> list[FacetBucket]:
    """Collapse author-string buckets onto their first author.

    Several author strings can share a first author; their counts are summed
    so each work is still counted at most once per bucket.
    """
    merged: dict[str, int] = {}
    for author_string, count in rows:
        name = first_author(author_string or "")
        if name:
            merged[name] = merged.get(name, 0) + int(count)
    ordered = sorted(merged.items(), key=lambda item: (-item[1], item[0]))
    return [FacetBucket(value=name, count=count) for name, count in ordered[:limit]]
