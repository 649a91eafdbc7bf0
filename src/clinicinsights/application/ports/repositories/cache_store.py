"""
Shared (L2) cache store interface.
"""

from abc import ABC, abstractmethod
from typing import List, Optional


class SharedCacheStore(ABC):
    """Abstract network cache holding serialized cache items."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def scan(self, pattern: str) -> List[str]:
        """Keys matching a glob pattern."""
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining seconds, or -1 when the key is missing or has no expiry."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        pass

    async def close(self) -> None:
        pass
