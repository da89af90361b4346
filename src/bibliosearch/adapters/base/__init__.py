"""Base adapter interface — Abstract classes for search backends."""

from bibliosearch.adapters.base.adapter import BackendHealth, SearchBackend

__all__ = ["BackendHealth", "SearchBackend"]
