"""
Redis-backed ResponseCache for sharing tokens and prices across processes.
"""

from datetime import datetime, timedelta

import redis.asyncio as redis
from loguru import logger

from spresso.services.cache import ResponseCache, resolve_ttl
from spresso.services.errors import CacheError


class RedisResponseCache(ResponseCache):
    """
    Distributed cache on top of redis.asyncio.

    Usage:
        cache = RedisResponseCache.from_url("redis://localhost:6379/0")
    """

    SERVICE_ID = "redis"

    def __init__(self, client: redis.Redis, prefix: str = ""):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisResponseCache":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(self._key(key))
        except redis.RedisError as e:
            raise CacheError(f"Cache get failed for {key}: {e}", self.SERVICE_ID) from e

        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(
        self,
        key: str,
        value: str,
        ttl: timedelta | None = None,
        absolute_expiration: datetime | None = None,
    ) -> None:
        effective_ttl = resolve_ttl(ttl, absolute_expiration)
        px = None
        if effective_ttl is not None:
            px = int(effective_ttl.total_seconds() * 1000)
            if px <= 0:
                logger.debug(f"[RedisResponseCache] SKIP: {key[:50]} (already expired)")
                return

        try:
            await self._client.set(self._key(key), value, px=px)
        except redis.RedisError as e:
            raise CacheError(f"Cache set failed for {key}: {e}", self.SERVICE_ID) from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except redis.RedisError as e:
            raise CacheError(
                f"Cache delete failed for {key}: {e}", self.SERVICE_ID
            ) from e

    async def close(self) -> None:
        await self._client.aclose()
