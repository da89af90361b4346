"""Observability — Logging setup."""

from bibliosearch.observability.logging import setup_logging

__all__ = ["setup_logging"]
