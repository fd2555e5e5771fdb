"""Bounded text-to-vector memoization with FIFO eviction and lazy TTL."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable


@dataclass
class EmbeddingCacheConfig:
    """Configuration for the embedding cache."""
    max_size: int = 10000
    ttl_seconds: float = 24 * 60 * 60


@dataclass
class CacheStats:
    size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _Entry:
    vector: list[float]
    inserted_at: float


class EmbeddingCache:
    """Memoizes embeddings in front of the embedding collaborator.

    Eviction removes the oldest-inserted entry, not the least recently read.
    Expired entries are removed when read and count as misses.
    """

    def __init__(
        self,
        config: EmbeddingCacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EmbeddingCacheConfig()
        if self.config.max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> list[float] | None:
        _check_key(key)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self._clock() - entry.inserted_at > self.config.ttl_seconds:
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.vector

    def set(self, key: str, vector: list[float]) -> None:
        """Insert ``vector`` as the newest entry, evicting the oldest at capacity."""
        _check_key(key)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.config.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = _Entry(vector=list(vector), inserted_at=self._clock())

    def has(self, key: str) -> bool:
        """Membership check that does not touch the hit/miss counters."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        return self._clock() - entry.inserted_at <= self.config.ttl_seconds

    def clear(self) -> None:
        self._entries.clear()

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), hits=self._hits, misses=self._misses)

    def __len__(self) -> int:
        return len(self._entries)


def _check_key(key: str) -> None:
    if not key:
        raise ValueError("Cache key must be a non-empty string")
