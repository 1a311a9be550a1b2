"""
Simple In-Memory Caching System
TTL cache owned by a single component instance (e.g. the rate aggregator)
"""

import time
import logging
from typing import Any, Callable, Dict, Hashable, Optional

from utils.rw_lock import ReadWriteLock

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe in-memory cache with TTL support.

    Expired entries are never returned: a read past the TTL is a miss and the
    entry is dropped, so callers refresh synchronously.
    """

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[Hashable, Dict[str, Any]] = {}
        self._lock = ReadWriteLock()
        self._clock = clock
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Get value from cache"""
        now = self._clock()
        with self._lock.read_locked():
            entry = self._cache.get(key)
            fresh = entry is not None and now < entry["expires_at"]
            if fresh:
                value = entry["value"]

        if fresh:
            self.stats["hits"] += 1
            return value

        if entry is not None:
            # Expired: evict so the next writer starts clean
            with self._lock.write_locked():
                current = self._cache.get(key)
                if current is entry:
                    del self._cache[key]
                    self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: Hashable, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        now = self._clock()
        with self._lock.write_locked():
            self._cache[key] = {
                "value": value,
                "created_at": now,
                "expires_at": now + ttl,
            }
        self.stats["sets"] += 1

    def delete(self, key: Hashable) -> bool:
        """Delete key from cache"""
        with self._lock.write_locked():
            if key in self._cache:
                del self._cache[key]
                self.stats["deletes"] += 1
                return True
        return False

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock.write_locked():
            cleared_count = len(self._cache)
            self._cache.clear()
        self.stats["deletes"] += cleared_count

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self),
        }
