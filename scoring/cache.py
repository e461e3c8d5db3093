"""In-memory TTL cache for expensive score aggregates.

Global maxima change only when the question catalog changes, while user
scores are requested on every dashboard load. Entries expire after a TTL
and are dropped explicitly by catalog writes.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    data: Any
    created_at: float
    ttl: float | None = None
    hits: int = 0

    def is_expired(self, now: float | None = None) -> bool:
        """Check if the cache entry has expired."""
        if self.ttl is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self.created_at >= self.ttl


class ScoreCache:
    """Async-safe TTL cache; concurrent misses on one key share a single load."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: str) -> Any | None:
        """Return a fresh cached value or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        entry.hits += 1
        return entry.data

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        self._entries[key] = CacheEntry(data=value, created_at=self._clock(), ttl=self.ttl_seconds)

    async def get_or_compute(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key``, awaiting ``loader`` on a miss.

        Args:
            key: Cache key
            loader: Coroutine factory producing the value

        Returns:
            Cached or freshly computed value
        """
        if not self.enabled:
            return await loader()

        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another waiter may have filled the entry meanwhile
            cached = self.get(key)
            if cached is not None:
                return cached

            logger.debug(f"Score cache miss for {key!r}")
            value = await loader()
            self.set(key, value)
            return value

    def invalidate(self, key: str | None = None) -> None:
        """Drop one entry, or every entry when ``key`` is None."""
        if key is None:
            dropped = len(self._entries)
            self._entries.clear()
        else:
            dropped = 1 if self._entries.pop(key, None) is not None else 0
        if dropped:
            logger.info(f"Invalidated {dropped} score cache entries")

    def __len__(self) -> int:
        return len(self._entries)
