"""
ResponseCache - key/value store for serialized API responses.

Backends:
- MemoryResponseCache: in-process store with TTL and oldest-entry eviction
- RedisResponseCache: distributed store (see spresso.services.redis_cache)

Values are strings; callers own serialization. The cache is an optimization:
concurrent writers race with last-write-wins semantics.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_ttl(
    ttl: timedelta | None,
    absolute_expiration: datetime | None,
) -> timedelta | None:
    """
    Collapse relative/absolute expiration into a relative TTL.

    Returns None when the entry should never expire. When both are given the
    earlier expiry wins.
    """
    candidates = []
    if ttl is not None:
        candidates.append(ttl)
    if absolute_expiration is not None:
        candidates.append(absolute_expiration - utcnow())
    if not candidates:
        return None
    return min(candidates)


class ResponseCache(ABC):
    """
    Abstract cache consumed by the token provider and pricing client.

    Implementations surface backend failures as CacheError; they do not retry.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the cached value, or None on a miss or expired entry."""
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        ttl: timedelta | None = None,
        absolute_expiration: datetime | None = None,
    ) -> None:
        """Store a value. A non-positive effective TTL stores nothing."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True when something was removed."""
        ...


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    value: str
    created_at: datetime
    expires_at: datetime | None

    def is_expired(self) -> bool:
        return self.expires_at is not None and utcnow() >= self.expires_at


class MemoryResponseCache(ResponseCache):
    """
    In-process cache with per-entry TTL.

    Usage:
        cache = MemoryResponseCache(max_size=1000)

        raw = await cache.get("Spresso.Auth.AuthKey.default")
        if raw is None:
            raw = await fetch()
            await cache.set("Spresso.Auth.AuthKey.default", raw, ttl=timedelta(hours=1))
    """

    def __init__(self, max_size: int = 10_000, debug: bool = False):
        self._memory: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            if entry.is_expired():
                del self._memory[key]
                self._stats.misses += 1
                self._log(f"EXPIRED: {key[:50]}")
                return None

            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
            return entry.value

    async def set(
        self,
        key: str,
        value: str,
        ttl: timedelta | None = None,
        absolute_expiration: datetime | None = None,
    ) -> None:
        effective_ttl = resolve_ttl(ttl, absolute_expiration)
        if effective_ttl is not None and effective_ttl <= timedelta(0):
            self._log(f"SKIP: {key[:50]} (already expired)")
            return

        now = utcnow()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + effective_ttl if effective_ttl is not None else None,
        )

        async with self._lock:
            if len(self._memory) >= self._max_size and key not in self._memory:
                self._evict_oldest()

            self._memory[key] = entry
            ttl_label = (
                f"{effective_ttl.total_seconds()}s" if effective_ttl else "no expiry"
            )
            self._log(f"SET: {key[:50]} (TTL: {ttl_label})")

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._memory:
                del self._memory[key]
                self._log(f"DELETE: {key[:50]}")
                return True
            return False

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._log(f"CLEAR: {count} entries removed")

    def _evict_oldest(self) -> None:
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].created_at,
        )
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[MemoryResponseCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
