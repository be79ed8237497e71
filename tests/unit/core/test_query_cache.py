"""Tests for the TTL-bounded LRU cache."""

import pytest

from kb_search.core.query_cache import LRUCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_entries_expire_after_ttl(clock):
    cache: LRUCache[str, int] = LRUCache(max_size=4, ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    clock.now = 9.0
    assert cache.get("a") == 1
    clock.now = 10.5
    assert cache.get("a") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted(clock):
    cache: LRUCache[str, int] = LRUCache(max_size=2, ttl_seconds=60, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache


def test_prune_drops_only_expired_entries(clock):
    cache: LRUCache[str, int] = LRUCache(max_size=4, ttl_seconds=5, clock=clock)
    cache.set("old", 1)
    clock.now = 4.0
    cache.set("new", 2)
    clock.now = 6.0
    assert cache.prune() == 1
    assert "new" in cache


def test_get_similar_finds_close_key(clock):
    cache: LRUCache[str, str] = LRUCache(max_size=4, ttl_seconds=60, clock=clock)
    cache.set("vector database", "hit")

    def similarity(a: str, b: str) -> float:
        return 1.0 if a.rstrip("s") == b.rstrip("s") else 0.0

    assert cache.get_similar("vector databases", similarity) == "hit"
    assert cache.get_similar("unrelated", similarity) is None


def test_stats_track_hits_and_misses(clock):
    cache: LRUCache[str, int] = LRUCache(max_size=4, ttl_seconds=60, clock=clock)
    cache.set("a", 1)
    cache.get("a")
    cache.get("b")
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_rejects_non_positive_size():
    with pytest.raises(ValueError):
        LRUCache(max_size=0)
