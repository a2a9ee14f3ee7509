"""Session-scoped caches: a TTL cache and a per-key memoizer."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class TTLCache(Generic[T]):
    """Thread-safe TTL cache keyed by string.

    Expired entries are dropped lazily on read and in bulk every
    ``cleanup_interval`` seconds; when ``max_entries`` is exceeded the oldest
    tenth is evicted.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int = 10000, cleanup_interval: int = 60):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._cleanup_interval = cleanup_interval
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._last_cleanup = time.time()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        """Return the cached value or None if missing/expired."""
        with self._lock:
            self._maybe_cleanup()
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._cache[key]
                return None
            return entry.value

    def set(self, key: str, value: T, ttl: Optional[int] = None) -> None:
        """Cache a value, optionally overriding the default TTL."""
        effective_ttl = ttl if ttl is not None else self._default_ttl
        with self._lock:
            self._maybe_cleanup()
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + effective_ttl)
            if len(self._cache) > self._max_entries:
                self._evict_oldest(max(1, self._max_entries // 10))

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cached entries."""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _maybe_cleanup(self) -> None:
        now = time.time()
        if now - self._last_cleanup > self._cleanup_interval:
            for key in [k for k, v in self._cache.items() if v.is_expired()]:
                del self._cache[key]
            self._last_cleanup = now

    def _evict_oldest(self, count: int) -> None:
        oldest = sorted(self._cache.items(), key=lambda kv: kv[1].created_at)[:count]
        for key, _ in oldest:
            del self._cache[key]


class KeyedMemo(Generic[T]):
    """Process-lifetime memo with first-writer-wins population per key.

    Uses double-checked locking with one lock per key so that computing a
    value for one key never blocks readers or writers of another key. A
    factory that raises leaves the key unpopulated so a later call retries.
    """

    def __init__(self) -> None:
        self._values: Dict[Hashable, T] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def get_or_create(self, key: Hashable, factory: Callable[[], T]) -> T:
        """Return the memoized value for key, creating it at most once."""
        value = self._values.get(key)
        if value is not None:
            return value
        with self._lock_for(key):
            value = self._values.get(key)
            if value is None:
                value = factory()
                self._values[key] = value
            return value

    def peek(self, key: Hashable) -> Optional[T]:
        return self._values.get(key)

    def discard(self, key: Hashable) -> None:
        with self._lock_for(key):
            self._values.pop(key, None)

    def clear(self) -> None:
        with self._locks_guard:
            self._values.clear()
            self._key_locks.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)
