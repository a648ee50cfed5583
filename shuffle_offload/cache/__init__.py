"""Location and index caches."""
from .index import LocalIndexCache
from .locations import BlockLocationCache, CacheStats

__all__ = ["BlockLocationCache", "CacheStats", "LocalIndexCache"]
