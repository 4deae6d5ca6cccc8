"""
In-process expiring cache.

Entries carry their own deadline and are dropped lazily when read, or in
bulk by evict_expired(). No background timer is involved, so the cache works
the same under any scheduler and is trivially testable with a fake clock.
"""

import time
from typing import Any, Callable, Generic, Optional, TypeVar

V = TypeVar("V")


class ExpiringCache(Generic[V]):
    """Minimal get/set/evict map with per-entry TTL."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[Any, tuple[V, Optional[float]]] = {}

    def get(self, key: Any) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: Any, value: V, ttl: Optional[float] = None) -> None:
        deadline = self._clock() + ttl if ttl is not None else None
        self._entries[key] = (value, deadline)

    def ttl(self, key: Any) -> Optional[float]:
        """Seconds left for a live entry, None if absent or without deadline."""
        entry = self._entries.get(key)
        if entry is None or entry[1] is None:
            return None
        remaining = entry[1] - self._clock()
        return remaining if remaining > 0 else None

    def evict(self, key: Any) -> bool:
        return self._entries.pop(key, None) is not None

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, (_, deadline) in self._entries.items()
            if deadline is not None and deadline <= now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
