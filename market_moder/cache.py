from __future__ import annotations

import asyncio
import fnmatch
import time
from typing import Any, Optional, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)

SEARCH_PATTERN = "search:*"


def listing_key(listing_id: str) -> str:
    return f"listing:{listing_id}"


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


@runtime_checkable
class CacheSink(Protocol):
    async def invalidate(self, key: str) -> None:
        ...

    async def invalidate_pattern(self, pattern: str) -> None:
        ...


class LocalTTLCache:
    """In-process read cache keyed by strings with per-entry expiry."""

    def __init__(self, default_ttl: float = 900.0) -> None:
        self._default_ttl = default_ttl
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            deadline, value = entry
            if deadline <= time.monotonic():
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self._entries[key] = (time.monotonic() + (ttl or self._default_ttl), value)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def invalidate_pattern(self, pattern: str) -> None:
        async with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
        logger.debug("cache_pattern_invalidated", pattern=pattern, removed=len(doomed))


class CacheInvalidator:
    """Best-effort front for a cache sink; failures are logged and dropped."""

    def __init__(self, sink: Optional[CacheSink] = None) -> None:
        self._sink = sink

    async def listing_changed(self, listing_id: str) -> None:
        await self._safe("invalidate", listing_key(listing_id))
        await self._safe("invalidate_pattern", SEARCH_PATTERN)

    async def user_changed(self, user_id: int) -> None:
        await self._safe("invalidate", user_key(user_id))

    async def _safe(self, method: str, arg: str) -> None:
        if self._sink is None:
            return
        try:
            await getattr(self._sink, method)(arg)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("cache_invalidation_failed", method=method, key=arg, error=str(exc))
