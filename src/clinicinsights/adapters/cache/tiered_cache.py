"""
Two-tier cache: a small local L1 in front of a shared L2 store.

Reads check L1 first and populate it from L2 hits; writes go to both.
Any L2 failure is logged and the operation continues on L1 alone, so a
cache problem never aborts a pipeline.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from clinicinsights.application.ports.repositories.cache_store import SharedCacheStore
from clinicinsights.observability.metrics import record_cache_event

from .base import AICache, CacheEntryInfo, CacheEvent, CacheStats
from .memory_cache import MemoryAICache

logger = logging.getLogger(__name__)


class TieredAICache(AICache):
    """L1 (memory, short TTL) + L2 (shared store) cache."""

    def __init__(
        self,
        l2_store: SharedCacheStore,
        default_ttl: int = 600,
        ttl_table: Optional[Dict[str, int]] = None,
        l1_max_size: int = 100,
        l1_ttl: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.l2 = l2_store
        self.default_ttl = default_ttl
        self.ttl_table = dict(ttl_table or {})
        self.l1_ttl = l1_ttl
        self.l1 = MemoryAICache(
            max_size=l1_max_size,
            default_ttl=l1_ttl,
            cleanup_interval_seconds=0,
            clock=clock,
        )
        self._clock = clock
        self._l2_hits = 0
        self._l2_misses = 0
        self._l2_errors = 0
        self._l2_available: Optional[bool] = None

    def resolve_ttl(self, pipeline_type: Optional[str]) -> int:
        if pipeline_type and pipeline_type in self.ttl_table:
            return self.ttl_table[pipeline_type]
        return self.default_ttl

    def _l2_failed(self, operation: str, key: Optional[str], error: Exception) -> None:
        self._l2_errors += 1
        self._l2_available = False
        logger.warning(f"L2 cache {operation} failed key={key}: {error}; continuing with L1 only")
        record_cache_event("l2_error")

    @staticmethod
    def _serialize(value: Any, meta: CacheEntryInfo, created_at: float) -> str:
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return json.dumps(
            {
                "value": value,
                "metadata": {
                    "pipeline_type": meta.pipeline_type,
                    "prompt_version": meta.prompt_version,
                    "patient_id": meta.patient_id,
                    "session_id": meta.session_id,
                    "created_at": created_at,
                },
            },
            default=str,
        )

    async def get(self, key: str) -> Optional[Any]:
        value = await self.l1.get(key)
        if value is not None:
            self._emit(CacheEvent("hit", key, detail={"tier": "l1"}))
            return value

        try:
            raw = await self.l2.get(key)
            self._l2_available = True
        except Exception as e:
            self._l2_failed("get", key, e)
            self._emit(CacheEvent("miss", key))
            return None

        if raw is None:
            self._l2_misses += 1
            self._emit(CacheEvent("miss", key))
            return None

        try:
            envelope = json.loads(raw)
            meta = CacheEntryInfo(
                pipeline_type=envelope["metadata"]["pipeline_type"],
                prompt_version=envelope["metadata"]["prompt_version"],
                patient_id=envelope["metadata"]["patient_id"],
                session_id=envelope["metadata"].get("session_id"),
            )
        except (ValueError, KeyError, TypeError) as e:
            self._l2_failed("decode", key, e)
            return None

        self._l2_hits += 1
        await self.l1.set(key, envelope["value"], meta, ttl=self.l1_ttl)
        self._emit(CacheEvent("hit", key, meta.pipeline_type, {"tier": "l2"}))
        return envelope["value"]

    async def set(self, key: str, value: Any, meta: CacheEntryInfo, ttl: Optional[int] = None) -> None:
        ttl_seconds = ttl if ttl is not None else self.resolve_ttl(meta.pipeline_type)
        await self.l1.set(key, value, meta, ttl=min(ttl_seconds, self.l1_ttl))
        try:
            await self.l2.set(key, self._serialize(value, meta, self._clock()), ttl_seconds)
            self._l2_available = True
        except Exception as e:
            self._l2_failed("set", key, e)
        self._emit(CacheEvent("set", key, meta.pipeline_type, {"ttl": ttl_seconds}))

    async def delete(self, key: str) -> bool:
        removed = await self.l1.delete(key)
        try:
            removed = await self.l2.delete(key) or removed
        except Exception as e:
            self._l2_failed("delete", key, e)
        return removed

    async def clear(self, pattern: Optional[str] = None) -> int:
        removed_local = await self.l1.clear(pattern)
        try:
            keys = await self.l2.scan(pattern or "*")
            for key in keys:
                await self.l2.delete(key)
            removed = max(len(keys), removed_local)
        except Exception as e:
            self._l2_failed("clear", pattern, e)
            removed = removed_local
        self._emit(CacheEvent("clear", pattern, detail={"removed": removed}))
        return removed

    async def has(self, key: str) -> bool:
        if await self.l1.has(key):
            return True
        try:
            return await self.l2.get(key) is not None
        except Exception as e:
            self._l2_failed("has", key, e)
            return False

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        local = await self.l1.keys(pattern)
        try:
            shared = await self.l2.scan(pattern or "*")
        except Exception as e:
            self._l2_failed("keys", pattern, e)
            return local
        return sorted(set(local) | set(shared))

    async def ttl(self, key: str) -> int:
        try:
            remaining = await self.l2.ttl(key)
        except Exception as e:
            self._l2_failed("ttl", key, e)
            return await self.l1.ttl(key)
        if remaining < 0:
            return await self.l1.ttl(key)
        return remaining

    async def touch(self, key: str, ttl: Optional[int] = None) -> bool:
        try:
            raw = await self.l2.get(key)
        except Exception as e:
            self._l2_failed("touch", key, e)
            return await self.l1.touch(key, ttl)
        if raw is None:
            return await self.l1.touch(key, ttl)

        try:
            pipeline_type = json.loads(raw)["metadata"]["pipeline_type"]
        except (ValueError, KeyError, TypeError) as e:
            self._l2_failed("decode", key, e)
            return await self.l1.touch(key, ttl)
        ttl_seconds = ttl if ttl is not None else self.resolve_ttl(pipeline_type)
        try:
            await self.l2.set(key, raw, ttl_seconds)
        except Exception as e:
            self._l2_failed("touch", key, e)
        await self.l1.touch(key, min(ttl_seconds, self.l1_ttl))
        return True

    async def get_stats(self) -> CacheStats:
        stats = await self.l1.get_stats()
        lookups = stats.hits + self._l2_hits + self._l2_misses
        hits = stats.hits + self._l2_hits
        try:
            stats.total_keys = len(await self.l2.scan("*"))
        except Exception as e:
            self._l2_failed("stats", None, e)
        stats.hits = hits
        stats.misses = self._l2_misses
        stats.hit_rate = hits / lookups if lookups else 0.0
        stats.miss_rate = self._l2_misses / lookups if lookups else 0.0
        stats.backend = "tiered"
        stats.l2_available = self._l2_available
        stats.l2_errors = self._l2_errors
        return stats

    async def health_check(self) -> bool:
        try:
            await self.l2.ping()
            self._l2_available = True
            return True
        except Exception as e:
            self._l2_failed("ping", None, e)
            return False

    async def shutdown(self) -> None:
        await self.l1.shutdown()
        try:
            await self.l2.close()
        except Exception as e:
            logger.warning(f"L2 cache close failed: {e}")
        logger.info("Tiered cache shut down")
