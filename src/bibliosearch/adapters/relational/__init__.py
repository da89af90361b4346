"""Relational adapter — Fallback search and network sources over SQLAlchemy async."""

from bibliosearch.adapters.relational.adapter import RelationalAdapter, parse_terms
from bibliosearch.adapters.relational.database import build_engine
from bibliosearch.adapters.relational.network import CitationSource, CollaborationSource

__all__ = ["CitationSource", "CollaborationSource", "RelationalAdapter", "build_engine", "parse_terms"]
