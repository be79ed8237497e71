"""LRU cache with time-to-live expiry.

Used for query embeddings (text -> vector) and for the document count.
Cache hits are an optimization only; nothing depends on them for correctness.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from loguru import logger

K = TypeVar("K")
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Bounded LRU map whose entries also expire after ``ttl_seconds``.

    Example:
        cache: LRUCache[str, list[float]] = LRUCache(max_size=256, ttl_seconds=300)
        cache.set("向量数据库", embedding)
        cache.get("向量数据库")  # -> embedding (hit), or None once expired
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, tuple[V, float]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self.ttl_seconds

    def get(self, key: K) -> V | None:
        """Return the cached value, or None on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        value, stored_at = entry
        if self._expired(stored_at):
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        """Store a value, evicting the least recently used entry when full."""
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.trace(f"LRU cache evicted {str(evicted)[:50]}")
        self._entries[key] = (value, self._clock())

    def get_similar(
        self,
        key: K,
        similarity_fn: Callable[[K, K], float],
        threshold: float = 0.95,
    ) -> V | None:
        """Return the value of the most similar live key scoring >= threshold.

        An exact hit is returned directly. Expired entries are skipped.
        """
        exact = self.get(key)
        if exact is not None:
            return exact

        best_key: K | None = None
        best_score = threshold
        for candidate, (_, stored_at) in self._entries.items():
            if self._expired(stored_at):
                continue
            score = similarity_fn(key, candidate)
            if score >= best_score:
                best_key, best_score = candidate, score

        if best_key is None:
            return None

        # Undo the miss counted by the exact lookup above
        self._misses -= 1
        return self.get(best_key)

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def prune(self) -> int:
        """Remove expired entries and return how many were dropped."""
        expired = [k for k, (_, ts) in self._entries.items() if self._expired(ts)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired cache entries")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not self._expired(entry[1])

    def get_stats(self) -> dict[str, Any]:
        """Get cache performance statistics."""
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
        }
