"""Time-bounded, size-bounded key/value cache shared across call sessions."""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


@dataclass
class CacheStats:
    """Snapshot of cache counters."""

    size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0


class TTLCache(Generic[V]):
    """
    Key/value store with a fixed time-to-live and a fixed capacity.

    Inserting beyond capacity evicts the oldest inserted entry; reads do not
    refresh an entry's position. Expired entries are dropped lazily when they
    are looked up. All operations take one lock, so a single instance can be
    shared by every session in the process.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[V, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(text: str, namespace: str = "") -> str:
        """Build a cache key from lookup text and a namespace discriminator."""
        return f"{namespace}:{text.strip().lower()}"

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None on a miss or an expired entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, inserted_at = entry
            if self._clock() - inserted_at >= self.ttl_seconds:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: V) -> V:
        """Store a value, evicting the oldest entries if the cache is full."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock())
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(size=len(self._entries), hits=self._hits, misses=self._misses)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def stats_dict(cache: TTLCache) -> Dict[str, object]:
    """Render cache statistics for the health endpoint."""
    snapshot = cache.stats()
    return {
        "size": snapshot.size,
        "hits": snapshot.hits,
        "misses": snapshot.misses,
        "hit_rate": f"{snapshot.hit_rate:.2f}%",
    }
