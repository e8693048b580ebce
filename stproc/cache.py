"""
Cache backends for runtime metadata.

The procedure existence cache stores its entries through a CacheBackend so a
host can plug in a shared store; InMemoryCache is the process-local default.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar('T')  # Cache value type


@dataclass
class CacheEntry(Generic[T]):
    """A cache entry with metadata."""

    value: T
    expiry: float
    created_at: float = field(default_factory=time.monotonic)
    last_accessed: float = field(default_factory=time.monotonic)
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expiry

    def access(self, now: float) -> None:
        self.last_accessed = now
        self.access_count += 1


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache.

        Args:
            key: The cache key

        Returns:
            The cached value, or None if absent or expired
        """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set a value in the cache.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Time-to-live in seconds
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value from the cache."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}


class InMemoryCache(CacheBackend):
    """Process-local TTL cache with least-recently-used eviction."""

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the in-memory cache.

        Args:
            max_size: Maximum number of entries
            default_ttl: Default time-to-live in seconds
            clock: Monotonic clock in seconds
        """
        self.cache: Dict[str, CacheEntry] = {}
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.clock = clock
        self.lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.sets = 0
        self.deletes = 0

    async def get(self, key: str) -> Optional[Any]:
        now = self.clock()
        with self.lock:
            entry = self.cache.get(key)

            if entry is None:
                self.misses += 1
                return None

            if entry.is_expired(now):
                del self.cache[key]
                self.evictions += 1
                self.misses += 1
                return None

            entry.access(now)
            self.hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self.clock()
        ttl = self.default_ttl if ttl is None else ttl

        with self.lock:
            if len(self.cache) >= self.max_size and key not in self.cache:
                self._evict_locked()
            self.cache[key] = CacheEntry(value=value, expiry=now + ttl, created_at=now, last_accessed=now)
            self.sets += 1

    async def delete(self, key: str) -> bool:
        with self.lock:
            if key in self.cache:
                del self.cache[key]
                self.deletes += 1
                return True
            return False

    async def clear(self) -> None:
        with self.lock:
            self.cache.clear()

    async def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            total = self.hits + self.misses
            return {
                "size": len(self.cache),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
                "evictions": self.evictions,
                "sets": self.sets,
                "deletes": self.deletes,
            }

    def _evict_locked(self) -> None:
        if not self.cache:
            return
        key = min(self.cache, key=lambda k: self.cache[k].last_accessed)
        del self.cache[key]
        self.evictions += 1
