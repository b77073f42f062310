"""
Process-local read-through cache with TTL eviction.

Absent results are cached like present ones: ``get`` returns ``None`` on a
miss and a ``CacheEntry`` (whose ``value`` may itself be ``None``) on a hit.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_TTL_SECONDS = 300  # 5 minutes


@dataclass
class CacheEntry(Generic[V]):
    value: Optional[V]
    stored_at: float


class TimedCache(Generic[K, V]):
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.stored_at >= self._ttl

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def get(self, key: K) -> Optional[CacheEntry[V]]:
        self.purge_expired()
        return self._entries.get(key)

    def put(self, key: K, value: Optional[V]) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def invalidate_all(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        valid = sum(1 for entry in self._entries.values() if not self._expired(entry, now))
        return {
            "totalEntries": len(self._entries),
            "validEntries": valid,
            "expiredEntries": len(self._entries) - valid,
        }
