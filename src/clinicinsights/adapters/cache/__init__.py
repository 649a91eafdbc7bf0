"""
Pipeline result cache backends.
"""

from typing import Optional

from clinicinsights.application.ports.repositories.cache_store import SharedCacheStore
from clinicinsights.core.config import Settings

from .base import AICache, CacheEntryInfo, CacheEvent, CacheStats
from .keys import CacheKeyGenerator
from .memory_cache import MemoryAICache
from .redis_store import RedisCacheStore
from .tiered_cache import TieredAICache


def create_cache(settings: Settings, l2_store: Optional[SharedCacheStore] = None) -> AICache:
    """Build the configured cache backend."""
    cache_settings = settings.cache
    if cache_settings.backend == "redis" or l2_store is not None:
        if l2_store is None:
            l2_store = RedisCacheStore.create(settings.redis)
        return TieredAICache(
            l2_store,
            default_ttl=cache_settings.default_ttl,
            ttl_table=cache_settings.ttl_table(),
            l1_max_size=cache_settings.l1_max_size,
            l1_ttl=cache_settings.l1_ttl,
        )

    return MemoryAICache(
        max_size=cache_settings.max_size,
        max_memory_mb=cache_settings.max_memory_mb,
        default_ttl=cache_settings.default_ttl,
        ttl_table=cache_settings.ttl_table(),
        cleanup_interval_seconds=cache_settings.cleanup_interval_seconds,
    )


__all__ = [
    "AICache",
    "CacheEntryInfo",
    "CacheEvent",
    "CacheKeyGenerator",
    "CacheStats",
    "MemoryAICache",
    "RedisCacheStore",
    "TieredAICache",
    "create_cache",
]
