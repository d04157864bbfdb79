"""
Bounded, time-limited memoisation of text -> embedding conversions.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import NamedTuple

#: Default number of cached vectors.
DEFAULT_MAX_SIZE: int = 1000

#: Default time-to-live of a cached vector, in seconds.
DEFAULT_TTL: float = 3600.0


def cache_key(provider: str, model: str | None, text: str) -> str:
    """
    Build the cache key for *text* embedded by *provider* / *model*.

    Both halves of the provider identity are part of the key so that
    switching providers never returns a vector from another embedding
    space.
    """
    return f"{provider}:{model or 'default'}:{text}"


class CacheEntry(NamedTuple):
    embedding: list[float]
    timestamp: float


class EmbeddingCache:
    """
    In-memory embedding cache with a TTL and oldest-insertion eviction.

    Parameters
    ----------
    max_size:
        Maximum number of entries.  When full, the single oldest-inserted
        entry is evicted before a new one is added.
    ttl:
        Entries older than this many seconds are treated as misses and
        dropped on lookup.
    clock:
        Time source, injectable for tests.  Defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        # dicts preserve insertion order, so the first key is the oldest.
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> list[float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp > self.ttl:
            del self._entries[key]
            return None
        return entry.embedding

    def set(self, key: str, embedding: list[float]) -> None:
        # Re-inserting refreshes both the timestamp and the insertion order.
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = CacheEntry(embedding, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
