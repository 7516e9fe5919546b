# fanreply/core/cache.py
"""
Small process-local caches with expiry / eviction.

These back the OAuth PKCE store and the auto-reply dedup/cooldown state.
They live in memory only and are cleared on restart; anything that needs to
survive a restart belongs in the database. All mutation happens on the event
loop thread, so no locking is done here.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")

Clock = Callable[[], float]


class ExpiringStore(Generic[V]):
    """Key -> value map where every entry carries its own deadline."""

    def __init__(self, default_ttl: float, clock: Clock = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}

    def put(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        self._entries[key] = (value, expires_at)

    def pop(self, key: Hashable) -> Optional[V]:
        """Read-once lookup. The entry is removed whether or not it was still valid."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            return None
        return value

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._entries.items() if now > exp]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() <= entry[1]

    def __len__(self) -> int:
        return len(self._entries)


class BoundedSet:
    """Insertion-ordered set; once `maxsize` is exceeded the oldest members go first."""

    def __init__(self, maxsize: int):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._items: "OrderedDict[Hashable, None]" = OrderedDict()

    def add(self, item: Hashable) -> None:
        self._items[item] = None
        self._items.move_to_end(item)
        while len(self._items) > self.maxsize:
            self._items.popitem(last=False)

    def discard(self, item: Hashable) -> None:
        self._items.pop(item, None)

    def __contains__(self, item: Hashable) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)


class CooldownTracker:
    """Remembers when each key was last touched, bounded like `BoundedSet`."""

    def __init__(self, maxsize: int = 10000, clock: Clock = time.monotonic):
        self.maxsize = maxsize
        self._clock = clock
        self._last: "OrderedDict[Hashable, float]" = OrderedDict()

    def touch(self, key: Hashable) -> None:
        self._last[key] = self._clock()
        self._last.move_to_end(key)
        while len(self._last) > self.maxsize:
            self._last.popitem(last=False)

    def seconds_since(self, key: Hashable) -> Optional[float]:
        last = self._last.get(key)
        if last is None:
            return None
        return self._clock() - last

    def is_cooling(self, key: Hashable, delay_seconds: float) -> bool:
        elapsed = self.seconds_since(key)
        return elapsed is not None and elapsed < delay_seconds

    def __len__(self) -> int:
        return len(self._last)
