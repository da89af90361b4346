"""Adapter-specific exceptions.

Backend failures derive from ``AdapterError`` and are recoverable by the
orchestrator (fallback, or a cache miss).  ``QueryError`` is deliberately
outside that hierarchy: a malformed request is rejected before dispatch and
never retried on another backend.
"""

from __future__ import annotations


class AdapterError(Exception):
    """Base exception for backend errors."""


class ConnectionError(AdapterError):
    """Raised when a backend cannot be reached or a call times out."""


class QueryExecutionError(AdapterError):
    """Raised when a backend rejects or fails a well-formed statement."""


class CacheUnavailableError(AdapterError):
    """Raised by a cache backend that cannot serve a request.

    Never surfaced to callers of ``CacheManager``.
    """


class ConfigurationError(AdapterError):
    """Raised when adapter configuration is invalid."""


class QueryError(ValueError):
    """Raised when a search query or filter is malformed or disallowed."""


class SearchUnavailableError(Exception):
    """Raised when both the primary and the fallback path failed.

    Attributes:
        operation: The logical operation that failed (``search``, ``facets``).
        primary_error: Why the primary path did not serve the request.
        fallback_error: Why the fallback path failed.
    """

    def __init__(
        self,
        operation: str,
        primary_error: BaseException | str,
        fallback_error: BaseException,
    ) -> None:
        self.operation = operation
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        super().__init__(
            f"{operation} failed on both engines: "
            f"primary: {_describe(primary_error)}; fallback: {_describe(fallback_error)}"
        )


def _describe(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
