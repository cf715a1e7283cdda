"""Bounded, thread-safe in-memory cache with per-entry TTL.

Used as the in-process tier in front of (or instead of) PostgreSQL:
the rate limit fallback store and the unwrapped key cache. Capacity is
enforced with LRU eviction; expired entries are dropped lazily on read
and eagerly by purge_expired().
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedTTLCache(Generic[K, V]):
    """LRU map whose entries expire ttl_seconds after their last write."""

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        """Initialize cache.

        Args:
            max_entries: Capacity; the least recently used entry is evicted
            ttl_seconds: Entry lifetime, or None for no expiry
            clock: Time source, injectable for tests
            name: Label used in log lines
        """
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._data: "OrderedDict[K, Tuple[V, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self._evictions = 0

    def _expiry(self) -> Optional[float]:
        if self.ttl_seconds is None:
            return None
        return self._clock() + self.ttl_seconds

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._expired(expires_at):
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry())
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)
                self._evictions += 1
                if self._evictions == 1 or self._evictions % 1000 == 0:
                    logger.warning(
                        "CACHE_CAPACITY_EVICTION",
                        extra={"cache": self.name, "evictions": self._evictions}
                    )

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            item = self._data.pop(key, None)
            return item[0] if item else None

    def items(self) -> List[Tuple[K, V]]:
        """Snapshot of live entries. Does not touch LRU order."""
        with self._lock:
            return [
                (key, value)
                for key, (value, expires_at) in self._data.items()
                if not self._expired(expires_at)
            ]

    def remove_where(self, predicate: Callable[[K, V], bool]) -> int:
        with self._lock:
            doomed = [k for k, (v, _) in self._data.items() if predicate(k, v)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            doomed = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    @property
    def evictions(self) -> int:
        return self._evictions

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]
