from market_gateway.cache import ResponseCache

from fakes import ManualClock


def make_cache(max_size=3):
    clock = ManualClock()
    return ResponseCache(max_size=max_size, clock=clock), clock


def test_entry_lives_until_ttl_elapses():
    cache, clock = make_cache()
    cache.set("k", {"price": 1}, ttl=2.0)

    clock.advance(2.0)
    assert cache.get("k") == {"price": 1}

    clock.advance(0.01)
    assert cache.get("k") is None
    assert "k" not in cache
    assert cache.expirations == 1


def test_missing_key_is_a_miss():
    cache, _ = make_cache()
    assert cache.get("nope") is None
    assert cache.stats()['misses'] == 1


def test_full_cache_evicts_oldest_entry_only():
    cache, clock = make_cache(max_size=3)
    for key in ("a", "b", "c"):
        cache.set(key, key, ttl=60)
        clock.advance(1)

    cache.set("d", "d", ttl=60)

    assert cache.get("a") is None
    assert [cache.get(k) for k in ("b", "c", "d")] == ["b", "c", "d"]
    assert len(cache) == 3
    assert cache.evictions == 1


def test_eviction_ignores_remaining_ttl():
    cache, clock = make_cache(max_size=2)
    cache.set("long", 1, ttl=3600)
    clock.advance(1)
    cache.set("short", 2, ttl=0.5)

    cache.set("new", 3, ttl=10)

    assert "long" not in cache
    assert cache.get("short") == 2


def test_overwrite_refreshes_stored_at_and_does_not_evict():
    cache, clock = make_cache(max_size=3)
    for key in ("a", "b", "c"):
        cache.set(key, key, ttl=60)
        clock.advance(1)

    cache.set("a", "a2", ttl=60)
    assert len(cache) == 3
    assert cache.evictions == 0

    # "a" is now the newest, so "b" goes first
    cache.set("d", "d", ttl=60)
    assert cache.get("a") == "a2"
    assert cache.get("b") is None


def test_clear_and_stats():
    cache, _ = make_cache()
    cache.set("x", 1, ttl=5)
    cache.get("x")
    cache.clear()

    stats = cache.stats()
    assert stats['size'] == 0
    assert stats['hits'] == 1
    assert stats['max_size'] == 3
