"""BiblioSearch — Bibliographic search core with engine fallback, caching and network graphs."""

__version__ = "0.1.0"
