from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    size: int
    expires_at: float
    last_accessed: float


@dataclass(slots=True)
class CacheStats:
    entries: int
    total_size: int
    max_size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class MemoryCache(Generic[T]):
    """
    Size- and age-bounded LRU cache.

    Entries are kept in access order; the first entry is always the least recently used.
    Expired entries are dropped lazily on read and in bulk by ``cleanup``.
    """

    def __init__(
        self,
        *,
        max_size: int,
        max_age_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._max_age = max_age_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._total_size = 0
        self._hits = 0
        self._misses = 0

    @property
    def total_size(self) -> int:
        return self._total_size

    def set(self, key: str, value: T, size: int) -> bool:
        if size < 0:
            raise ValueError("size must not be negative")
        if size > self._max_size:
            logger.debug("Cache entry larger than cache, not stored. key=%s size=%s", key, size)
            return False

        self._drop(key)
        while self._entries and self._total_size + size > self._max_size:
            evicted_key, _ = next(iter(self._entries.items()))
            self._drop(evicted_key)
            logger.debug("Cache entry evicted. key=%s", evicted_key)

        now = self._clock()
        self._entries[key] = CacheEntry(value=value, size=size, expires_at=now + self._max_age, last_accessed=now)
        self._total_size += size
        return True

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        now = self._clock()
        if entry.expires_at <= now:
            self._drop(key)
            self._misses += 1
            return None
        entry.last_accessed = now
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self._clock()

    def delete(self, key: str) -> bool:
        return self._drop(key)

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            self._drop(key)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._total_size = 0

    def keys(self) -> List[str]:
        return list(self._entries)

    def get_many(self, keys: Iterable[str]) -> Dict[str, T]:
        found: Dict[str, T] = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                found[key] = value
        return found

    def cleanup(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._drop(key)
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._entries),
            total_size=self._total_size,
            max_size=self._max_size,
            hits=self._hits,
            misses=self._misses,
        )

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._total_size -= entry.size
        return True
