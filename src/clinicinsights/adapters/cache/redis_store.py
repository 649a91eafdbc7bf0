"""Redis implementation of SharedCacheStore.

Values are serialized cache items; expiry is delegated to Redis via SET EX.
"""

import logging
from typing import List, Optional

import redis.asyncio as redis

from clinicinsights.application.ports.repositories.cache_store import SharedCacheStore
from clinicinsights.core.config import RedisSettings

logger = logging.getLogger(__name__)


class RedisCacheStore(SharedCacheStore):
    """L2 cache store backed by redis.asyncio."""

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def create(cls, settings: Optional[RedisSettings] = None) -> "RedisCacheStore":
        """Factory method building the client from settings.

        Args:
            settings: Redis settings. If None, read from the environment.

        Returns:
            Configured RedisCacheStore
        """
        settings = settings or RedisSettings()
        client = redis.Redis.from_url(
            settings.url,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_timeout,
            decode_responses=True,
        )
        logger.info(f"Redis cache store configured for {settings.url.split('@')[-1]}")
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=max(int(ttl_seconds), 1))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def scan(self, pattern: str) -> List[str]:
        return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    async def ttl(self, key: str) -> int:
        remaining = await self._client.ttl(key)
        return remaining if remaining >= 0 else -1

    async def ping(self) -> None:
        await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()
