"""
Bounded LRU Cache with TTL

Fronts the session-token store and holds warmed dashboard metrics.
A long-running scheduler keeps one of these for days, so it is capped by
size and every entry carries its own deadline.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")

NEVER = float("inf")


class _Slot(Generic[V]):
    __slots__ = ("value", "deadline")

    def __init__(self, value: V, deadline: float):
        self.value = value
        self.deadline = deadline

    def stale(self, now: float) -> bool:
        return now > self.deadline


class BoundedLRUCache(Generic[K, V]):
    """
    Thread-safe LRU cache with a size cap and per-entry TTL.

    `ttl_seconds` is the default lifetime; `set(..., ttl_seconds=...)`
    overrides it per entry, which is how session tokens follow the
    vendor's expiry instead of the cache default. A TTL of 0 never expires.

    Example:
        metrics = BoundedLRUCache[str, dict](max_size=512, ttl_seconds=3600)
        metrics.set("metrics_7d_all_all", calculator.compute(7))
        cached = metrics.get_or_load("metrics_30d_all_all", lambda: calculator.compute(30))
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._slots: OrderedDict[K, _Slot[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._counters = {"hits": 0, "misses": 0, "evictions": 0}

    def _deadline(self, ttl_seconds: float | None) -> float:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return NEVER
        return self._clock() + ttl

    def _live(self, key: K) -> _Slot[V] | None:
        # Caller holds the lock; drops the slot if it has gone stale
        slot = self._slots.get(key)
        if slot is not None and slot.stale(self._clock()):
            del self._slots[key]
            return None
        return slot

    def get(self, key: K) -> V | None:
        with self._lock:
            slot = self._live(key)
            if slot is None:
                self._counters["misses"] += 1
                return None
            self._slots.move_to_end(key)
            self._counters["hits"] += 1
            return slot.value

    def set(self, key: K, value: V, ttl_seconds: float | None = None) -> None:
        slot = _Slot(value, self._deadline(ttl_seconds))

        with self._lock:
            self._slots.pop(key, None)
            overflow = len(self._slots) + 1 - self.max_size
            for _ in range(max(0, overflow)):
                self._slots.popitem(last=False)
                self._counters["evictions"] += 1
            self._slots[key] = slot

    def get_or_load(self, key: K, loader: Callable[[], V | None], ttl_seconds: float | None = None) -> V | None:
        """Cached value, or `loader()` stored on a miss. None results are not cached."""
        cached = self.get(key)
        if cached is not None:
            return cached

        loaded = loader()
        if loaded is not None:
            self.set(key, loaded, ttl_seconds=ttl_seconds)
        return loaded

    def pop(self, key: K) -> V | None:
        with self._lock:
            slot = self._live(key)
            if slot is None:
                return None
            del self._slots[key]
            return slot.value

    def invalidate(self, key: K) -> bool:
        with self._lock:
            return self._slots.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()

    def keys(self) -> list[K]:
        """Unexpired keys, least recently used first."""
        now = self._clock()
        with self._lock:
            return [key for key, slot in self._slots.items() if not slot.stale(now)]

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, slot in self._slots.items() if slot.stale(now)]
            for key in stale:
                del self._slots[key]
        return len(stale)

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._slots)

    def get_stats(self) -> dict[str, Any]:
        lookups = self._counters["hits"] + self._counters["misses"]
        return {
            "size": len(self._slots),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            **self._counters,
            "hit_rate": round(self._counters["hits"] / lookups, 4) if lookups else 0.0,
        }
