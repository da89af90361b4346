"""Cache layer — Redis or in-memory store with category TTLs."""

from bibliosearch.cache.manager import CacheManager, TTLCategory

__all__ = ["CacheManager", "TTLCategory"]
