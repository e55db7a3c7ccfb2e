"""In-memory TTL cache.

Small LRU cache with per-entry expiry, used for the model discovery results
and the update manifest. All access happens on the event loop thread, so the
cache needs no locking.
"""

from __future__ import annotations

import time

from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """In-memory cache with TTL and max size."""

    def __init__(
        self,
        max_size: int = 128,
        default_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize cache.

        Args:
            max_size: Maximum number of entries (LRU eviction when exceeded)
            default_ttl: Default time-to-live in seconds
            clock: Monotonic time source, injectable for tests
        """
        self._entries: OrderedDict[str, tuple[T, float]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> T | None:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._clock() + ttl)

    def peek(self, key: str) -> T | None:
        """Return a live value without touching LRU order or statistics."""
        entry = self._entries.get(key)
        if entry is None or self._clock() >= entry[1]:
            return None
        return entry[0]

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0.0
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": f"{hit_rate:.1%}",
        }
