"""
In-process LRU cache for pipeline results.

Items carry an absolute expiry resolved from a per-pipeline TTL table and
are checked lazily on read. Both an item-count cap and a memory budget are
enforced by evicting least-recently-used items until both hold.
"""

import asyncio
import json
import logging
import math
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from clinicinsights.observability.metrics import record_cache_event

from .base import (
    AICache,
    CacheEntryInfo,
    CachedItem,
    CacheEvent,
    CacheItemMetadata,
    CacheStats,
    pattern_to_regex,
)

logger = logging.getLogger(__name__)


def estimate_size_bytes(value: Any) -> int:
    """Rough in-memory footprint: two bytes per character of the JSON form."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return len(str(value)) * 2


class MemoryAICache(AICache):
    """Local LRU cache with TTL and memory budget."""

    def __init__(
        self,
        max_size: int = 1000,
        max_memory_mb: float = 100.0,
        default_ttl: int = 600,
        ttl_table: Optional[Dict[str, int]] = None,
        cleanup_interval_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.max_size = max_size
        self.max_memory_bytes = int(max_memory_mb * 1024 * 1024)
        self.default_ttl = default_ttl
        self.ttl_table = dict(ttl_table or {})
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        self._items: "OrderedDict[str, CachedItem]" = OrderedDict()
        self._memory_bytes = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._response_time_total_ms = 0.0
        self._response_samples = 0
        # Serializes mutations of the LRU order and the size counters
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    def resolve_ttl(self, pipeline_type: Optional[str]) -> int:
        if pipeline_type and pipeline_type in self.ttl_table:
            return self.ttl_table[pipeline_type]
        return self.default_ttl

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        started = time.perf_counter()
        async with self._lock:
            item = self._items.get(key)
            now = self._clock()

            if item is None:
                self._misses += 1
                event = CacheEvent("miss", key)
            elif item.is_expired(now):
                self._remove(key)
                self._misses += 1
                event = CacheEvent("expire", key, item.metadata.pipeline_type)
                item = None
            else:
                item.metadata.hit_count += 1
                item.metadata.last_accessed_at = now
                self._items.move_to_end(key)
                self._hits += 1
                event = CacheEvent(
                    "hit", key, item.metadata.pipeline_type, {"hit_count": item.metadata.hit_count}
                )

            self._response_time_total_ms += (time.perf_counter() - started) * 1000.0
            self._response_samples += 1

        self._emit(event)
        record_cache_event(event.type, event.pipeline_type)
        return item.value if item is not None else None

    def peek(self, key: str) -> Optional[CachedItem]:
        """Inspect an item without touching LRU order or statistics."""
        return self._items.get(key)

    async def set(self, key: str, value: Any, meta: CacheEntryInfo, ttl: Optional[int] = None) -> None:
        ttl_seconds = ttl if ttl is not None else self.resolve_ttl(meta.pipeline_type)
        size = estimate_size_bytes(value)
        evicted: List[CachedItem] = []

        async with self._lock:
            now = self._clock()
            if key in self._items:
                self._remove(key)

            self._items[key] = CachedItem(
                key=key,
                value=value,
                metadata=CacheItemMetadata(
                    pipeline_type=meta.pipeline_type,
                    prompt_version=meta.prompt_version,
                    patient_id=meta.patient_id,
                    session_id=meta.session_id,
                    created_at=now,
                    last_accessed_at=now,
                    hit_count=0,
                    size_bytes=size,
                ),
                expires_at=now + ttl_seconds,
            )
            self._memory_bytes += size
            evicted = self._enforce_limits(protect=key)

        for item in evicted:
            self._emit(CacheEvent("evict", item.key, item.metadata.pipeline_type))
            record_cache_event("evict", item.metadata.pipeline_type)
        self._emit(CacheEvent("set", key, meta.pipeline_type, {"ttl": ttl_seconds, "size_bytes": size}))
        record_cache_event("set", meta.pipeline_type)

    def _enforce_limits(self, protect: Optional[str] = None) -> List[CachedItem]:
        evicted = []
        while self._items and (
            len(self._items) > self.max_size or self._memory_bytes > self.max_memory_bytes
        ):
            oldest_key = next(iter(self._items))
            if oldest_key == protect and len(self._items) == 1:
                # a single item larger than the budget stays until replaced
                break
            evicted.append(self._remove(oldest_key))
            self._evictions += 1
        if evicted:
            logger.debug(f"Cache evicted {len(evicted)} item(s)")
        return evicted

    def _remove(self, key: str) -> CachedItem:
        item = self._items.pop(key)
        self._memory_bytes -= item.metadata.size_bytes
        return item

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key not in self._items:
                return False
            item = self._remove(key)
        self._emit(CacheEvent("delete", key, item.metadata.pipeline_type))
        return True

    async def clear(self, pattern: Optional[str] = None) -> int:
        async with self._lock:
            if pattern is None:
                removed = len(self._items)
                self._items.clear()
                self._memory_bytes = 0
            else:
                regex = pattern_to_regex(pattern)
                matched = [key for key in self._items if regex.match(key)]
                for key in matched:
                    self._remove(key)
                removed = len(matched)

        self._emit(CacheEvent("clear", pattern, detail={"removed": removed}))
        logger.info(f"Cache cleared {removed} item(s) pattern={pattern or '*'}")
        return removed

    async def has(self, key: str) -> bool:
        item = self._items.get(key)
        return item is not None and not item.is_expired(self._clock())

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        now = self._clock()
        regex = pattern_to_regex(pattern) if pattern else None
        return [
            key
            for key, item in self._items.items()
            if not item.is_expired(now) and (regex is None or regex.match(key))
        ]

    async def ttl(self, key: str) -> int:
        item = self._items.get(key)
        if item is None:
            return -1
        remaining = item.expires_at - self._clock()
        if remaining <= 0:
            return -1
        return int(math.ceil(remaining))

    async def touch(self, key: str, ttl: Optional[int] = None) -> bool:
        async with self._lock:
            item = self._items.get(key)
            now = self._clock()
            if item is None or item.is_expired(now):
                return False
            ttl_seconds = ttl if ttl is not None else self.resolve_ttl(item.metadata.pipeline_type)
            item.expires_at = now + ttl_seconds
            item.metadata.last_accessed_at = now
            self._items.move_to_end(key)
            return True

    async def cleanup_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, item in self._items.items() if item.is_expired(now)]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug(f"Cache cleanup removed {len(expired)} expired item(s)")
        return len(expired)

    async def get_stats(self) -> CacheStats:
        now = self._clock()
        by_pipeline: Dict[str, int] = {}
        live = 0
        for item in self._items.values():
            if item.is_expired(now):
                continue
            live += 1
            by_pipeline[item.metadata.pipeline_type] = by_pipeline.get(item.metadata.pipeline_type, 0) + 1

        lookups = self._hits + self._misses
        return CacheStats(
            total_keys=live,
            memory_usage_mb=round(self._memory_bytes / (1024 * 1024), 4),
            hit_rate=self._hits / lookups if lookups else 0.0,
            miss_rate=self._misses / lookups if lookups else 0.0,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            average_response_time_ms=(
                self._response_time_total_ms / self._response_samples if self._response_samples else 0.0
            ),
            items_by_pipeline=by_pipeline,
            backend="memory",
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._cleanup_task is None and self.cleanup_interval_seconds > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.error(f"Cache cleanup failed: {e}")

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.clear()
        logger.info("Memory cache shut down")
