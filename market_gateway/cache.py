# market_gateway/cache.py
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional

from .models import CacheEntry


class ResponseCache:
    """
    Bounded TTL store of upstream payloads, keyed by request fingerprint.

    Expiry is checked lazily on read. When full, the entry with the oldest
    `stored_at` is evicted regardless of its remaining TTL: a plain FIFO,
    chosen over LRU to keep set() cheap. A long-lived entry can therefore be
    evicted before one that is about to expire.
    """
    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self._clock = clock
        # Insertion order == stored_at order, since set() re-inserts replaced keys.
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                return None
            self.hits += 1
            return entry.payload

    def set(self, key: str, payload: Any, ttl: float):
        with self._lock:
            if self._entries.pop(key, None) is None and len(self._entries) >= self.max_size:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                self.evictions += 1
            self._entries[key] = CacheEntry(key, payload, self._clock(), ttl)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {
            'size': len(self._entries),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
            'evictions': self.evictions,
            'expirations': self.expirations,
        }
