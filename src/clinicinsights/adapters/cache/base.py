"""
Cache abstractions shared by the local and the two-tier backends.
"""

import fnmatch
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntryInfo:
    """Identity of a cached pipeline result."""

    pipeline_type: str
    patient_id: str
    prompt_version: str
    session_id: Optional[str] = None


@dataclass
class CacheItemMetadata:
    pipeline_type: str
    prompt_version: str
    patient_id: str
    session_id: Optional[str]
    created_at: float
    last_accessed_at: float
    hit_count: int = 0
    size_bytes: int = 0


@dataclass
class CachedItem:
    key: str
    value: Any
    metadata: CacheItemMetadata
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheEvent:
    type: str  # hit, miss, set, delete, evict, expire, clear
    key: Optional[str] = None
    pipeline_type: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheStats:
    total_keys: int = 0
    memory_usage_mb: float = 0.0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    average_response_time_ms: float = 0.0
    items_by_pipeline: Dict[str, int] = field(default_factory=dict)
    backend: str = "memory"
    l2_available: Optional[bool] = None
    l2_errors: int = 0


CacheListener = Callable[[CacheEvent], None]


def pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    """Glob (``*`` wildcard) to an anchored regex."""
    return re.compile(fnmatch.translate(pattern))


class AICache(ABC):
    """Pipeline result cache."""

    def __init__(self) -> None:
        self._listeners: List[CacheListener] = []

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: CacheEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Cache listener failed for event={event.type}: {e}")

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, meta: CacheEntryInfo, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear(self, pattern: Optional[str] = None) -> int:
        """Remove every key, or those matching a glob pattern; returns count removed."""
        pass

    @abstractmethod
    async def has(self, key: str) -> bool:
        pass

    @abstractmethod
    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds, or -1 when absent."""
        pass

    @abstractmethod
    async def touch(self, key: str, ttl: Optional[int] = None) -> bool:
        """Restart an item's lifetime."""
        pass

    async def warm_up(self, items: Iterable[Tuple[str, Any, CacheEntryInfo]]) -> int:
        count = 0
        for key, value, meta in items:
            await self.set(key, value, meta)
            count += 1
        logger.info(f"Cache warm-up stored {count} item(s)")
        return count

    @abstractmethod
    async def get_stats(self) -> CacheStats:
        pass

    async def start(self) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True
