"""
Cache store with per-key TTL, pattern invalidation and scheduled invalidation.

The cache is an optimization, not a correctness requirement: backend failures
on reads fall through as a miss and failures on writes are logged and dropped.
"""

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


def is_pattern(key: str) -> bool:
    return any(c in _GLOB_CHARS for c in key)


@dataclass
class CacheEntry:
    """A cached value and the TTL it was stored with."""
    value: Any
    ttl_seconds: int
    stored_at: datetime


class CacheBackend:
    """Key-value backend. Implementations may raise when the store is unavailable."""

    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def set(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def set_many(self, entries: Dict[str, CacheEntry]) -> None:
        for key, entry in entries.items():
            await self.set(key, entry)

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def keys(self, pattern: str) -> List[str]:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    """In-process backend on a TLRU cache; each entry expires after its own TTL."""

    def __init__(self, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic):
        self._cache = TLRUCache(maxsize=maxsize, ttu=self._ttu, timer=timer)

    @staticmethod
    def _ttu(_key, entry: CacheEntry, now: float) -> float:
        return now + entry.ttl_seconds

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._cache.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._cache[key] = entry

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._cache.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def keys(self, pattern: str) -> List[str]:
        self._cache.expire()
        return [k for k in list(self._cache.keys()) if fnmatch.fnmatchcase(k, pattern)]


class CacheStore:
    """Cache access used by the sync engine and the refresh operations."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backend = backend or MemoryCacheBackend()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: Dict[str, asyncio.Lock] = {}
        # (key, instant) -> task that invalidates key at instant
        self._scheduled: Dict[Tuple[str, datetime], asyncio.Task] = {}

    def lock(self, key: str) -> asyncio.Lock:
        """Single-flight lock for a resource key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss", extra={
                "key": key,
                "error": str(e)
            })
            return None

    async def get(self, key: str) -> Any:
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self.backend.set(key, CacheEntry(value=value, ttl_seconds=ttl, stored_at=self._clock()))
            return True
        except Exception as e:
            logger.warning("Cache write failed", extra={"key": key, "error": str(e)})
            return False

    async def set_many(self, items: Iterable[Tuple[str, Any, int]]) -> bool:
        """Write several entries in one backend call."""
        now = self._clock()
        entries = {key: CacheEntry(value=value, ttl_seconds=ttl, stored_at=now) for key, value, ttl in items}
        if not entries:
            return True
        try:
            await self.backend.set_many(entries)
            return True
        except Exception as e:
            logger.warning("Cache batch write failed", extra={
                "keys": list(entries),
                "error": str(e)
            })
            return False

    async def invalidate(self, key: str) -> int:
        try:
            return await self.backend.delete(key)
        except Exception as e:
            logger.warning("Cache invalidation failed", extra={"key": key, "error": str(e)})
            return 0

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern."""
        try:
            keys = await self.backend.keys(pattern)
            if not keys:
                return 0
            deleted = await self.backend.delete(*keys)
        except Exception as e:
            logger.warning("Cache pattern invalidation failed", extra={
                "pattern": pattern,
                "error": str(e)
            })
            return 0

        logger.debug("Invalidated cache pattern", extra={"pattern": pattern, "deleted": deleted})
        return deleted

    async def invalidate_any(self, key_or_pattern: str) -> int:
        if is_pattern(key_or_pattern):
            return await self.invalidate_pattern(key_or_pattern)
        return await self.invalidate(key_or_pattern)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: int
    ) -> Any:
        """
        Read-through access.

        On a miss, concurrent callers for the same key share one fetch. Fetch
        errors propagate; a failed cache write does not.
        """
        value = await self.get(key)
        if value is not None:
            return value

        async with self.lock(key):
            value = await self.get(key)
            if value is not None:
                return value
            value = await fetch()
            await self.set(key, value, ttl)
            return value

    async def schedule_invalidation(self, key: str, at: datetime) -> None:
        """
        Invalidate `key` (or a glob pattern) at instant `at`.

        Scheduling the same key for the same instant again replaces the
        pending task. An instant in the past invalidates immediately.
        """
        delay = (at - self._clock()).total_seconds()
        if delay <= 0:
            await self.invalidate_any(key)
            return

        slot = (key, at)
        existing = self._scheduled.pop(slot, None)
        if existing is not None:
            existing.cancel()
        self._scheduled[slot] = asyncio.get_running_loop().create_task(
            self._invalidate_later(slot, delay)
        )

    async def _invalidate_later(self, slot: Tuple[str, datetime], delay: float) -> None:
        key, at = slot
        try:
            await asyncio.sleep(delay)
            deleted = await self.invalidate_any(key)
            logger.info("Scheduled cache invalidation fired", extra={
                "key": key,
                "scheduled_for": at.isoformat(),
                "deleted": deleted
            })
        finally:
            if self._scheduled.get(slot) is asyncio.current_task():
                del self._scheduled[slot]

    def pending_invalidations(self) -> List[Tuple[str, datetime]]:
        return sorted(self._scheduled, key=lambda slot: (slot[1], slot[0]))

    async def cancel_scheduled_invalidations(self) -> int:
        """Cancel every pending scheduled invalidation."""
        tasks = list(self._scheduled.values())
        self._scheduled.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)
