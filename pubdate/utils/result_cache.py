from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable, Optional

import structlog
from cachetools import TTLCache

logger = structlog.get_logger(__name__)


class BoundedCache:
    """A TTL cache that drops its oldest half once the ceiling is reached.

    Entries expire after ``ttl`` seconds. When the entry count reaches
    ``max_items`` the older half, by insertion order, is purged before the new
    value is stored. Reads and writes are atomic under an internal lock.
    """

    def __init__(
        self,
        max_items: int = 1000,
        ttl: float = 600.0,
        *,
        timer: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if max_items < 2:
            raise ValueError("max_items must be at least 2")
        self.max_items = max_items
        self.ttl = ttl
        self.name = name
        # One spare slot so cachetools never evicts on its own.
        self._cache: TTLCache = TTLCache(maxsize=max_items + 1, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._cache.get(key, default)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._cache.pop(key, None)
            self._cache.expire()
            if len(self._cache) >= self.max_items:
                self._purge_oldest_half()
            self._cache[key] = value

    def delete(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            return self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _purge_oldest_half(self) -> None:
        keys = list(self._cache.keys())
        stale = keys[: len(keys) // 2]
        for key in stale:
            self._cache.pop(key, None)
        logger.info(event="cache.purged", cache=self.name, removed=len(stale), kept=len(self._cache))


__all__ = ["BoundedCache"]
