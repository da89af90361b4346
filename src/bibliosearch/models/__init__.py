"""Data models — Queries, hits, facets, networks and responses."""
