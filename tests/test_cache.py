"""Tests for the TTL store, the cache service and the rate limiter.

Mocking strategy:
- A ``FakeClock`` callable is injected into ``CacheService`` / ``TTLStore``
  so expiry and sliding windows are tested without sleeping.
- ``monkeypatch`` makes a store method raise to check that cache failures
  degrade to a miss instead of propagating.
- Real threads (``ThreadPoolExecutor``) hit one key concurrently to check
  that read-modify-write updates are atomic.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from pagemill.cache import CacheService, TTLStore, cache_key, normalize_url
from pagemill.config import FetchOptions, Settings


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        workspace_dir=tmp_path,
        cache_ttl_seconds=60,
        content_cache_max_entries=3,
        metadata_cache_max_entries=3,
        rate_limit_window_ms=1_000,
        rate_limit_max_requests=3,
    )


@pytest.fixture()
def cache(settings: Settings, clock: FakeClock) -> CacheService:
    return CacheService(settings, clock=clock)


# ---------------------------------------------------------------------------
# TTLStore
# ---------------------------------------------------------------------------

class TestTTLStore:
    def test_get_set_and_counters(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=10, clock=clock)
        store.set("a", 1)
        assert store.get("a") == 1
        assert store.get("missing") is None
        assert (store.hits, store.misses) == (1, 1)
        assert store.hit_rate == 0.5

    def test_lazy_expiry(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=10, clock=clock)
        store.set("a", 1)
        store.set("b", 2, ttl=100)
        clock.advance(10)
        assert store.get("a") is None
        assert store.get("b") == 2
        assert store.keys() == ["b"]

    def test_sweep_removes_expired(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=5, clock=clock)
        store.set("a", 1)
        store.set("b", 2)
        store.set("c", 3, ttl=50)
        clock.advance(6)
        assert store.sweep() == 2
        assert len(store) == 1

    def test_lru_eviction_over_cap(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=100, max_entries=2, clock=clock)
        store.set("a", 1)
        clock.advance(1)
        store.set("b", 2)
        clock.advance(1)
        store.get("a")
        clock.advance(1)
        store.set("c", 3)
        assert sorted(store.keys()) == ["a", "c"]

    def test_peek_does_not_count(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=10, clock=clock)
        store.set("a", 1)
        assert store.peek("a") == 1
        assert store.has("a") is True
        assert (store.hits, store.misses) == (0, 0)

    def test_clear_and_stats(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=10, clock=clock)
        store.set("a", "xyz")
        store.get("a")
        assert store.stats() == {"keys": 1, "hits": 1, "misses": 0, "hitRate": 1.0, "memoryUsage": 3}
        assert store.clear() == 1
        assert store.stats()["hits"] == 0

    def test_update_is_atomic_across_threads(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=10, clock=clock)

        def increment(current):
            time.sleep(0.001)
            value = (current or 0) + 1
            return value, value

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.update("n", increment), range(16)))

        assert store.get("n") == 16
        assert sorted(results) == list(range(1, 17))

    def test_update_sees_expired_entry_as_missing(self, clock: FakeClock) -> None:
        store = TTLStore("t", default_ttl=5, clock=clock)
        store.set("a", 41)
        clock.advance(6)
        assert store.update("a", lambda current: (current, current)) is None


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

class TestCacheKey:
    def test_normalize_url(self) -> None:
        assert normalize_url("https://Example.com/Path?b=2&a=1#frag") == "https://example.com/path?a=1&b=2"

    def test_equivalent_urls_share_key(self) -> None:
        assert cache_key("https://x.com/p?b=2&a=1") == cache_key("https://X.com/p?a=1&b=2#top")

    def test_options_participate(self) -> None:
        base = cache_key("https://x.com", FetchOptions())
        assert cache_key("https://x.com", FetchOptions(wait_until="networkidle")) != base
        assert cache_key("https://x.com", FetchOptions(timeout_ms=5_000)) != base
        assert cache_key("https://x.com", None) == base

    def test_prefix(self) -> None:
        key = cache_key("https://x.com")
        assert key.startswith("url:")
        assert len(key) == len("url:") + 64


# ---------------------------------------------------------------------------
# CacheService
# ---------------------------------------------------------------------------

class TestContentCache:
    def test_roundtrip_and_metadata(self, cache: CacheService) -> None:
        assert cache.get_content("https://x.com") is None
        assert cache.cache_content("https://x.com", {"markdown": "# Hi"}) is True
        assert cache.has_content("https://x.com") is True
        assert cache.get_content("https://x.com") == {"markdown": "# Hi"}

        wrapped = cache.content.peek(cache_key("https://x.com"))
        assert wrapped["cached"]["url"] == "https://x.com"
        assert wrapped["cached"]["ttl"] == 60
        assert wrapped["cached"]["lastAccessed"] == 1_000_000

    def test_expires_after_ttl(self, cache: CacheService, clock: FakeClock) -> None:
        cache.cache_content("https://x.com", "v")
        clock.advance(60)
        assert cache.get_content("https://x.com") is None

    def test_invalidate(self, cache: CacheService) -> None:
        cache.cache_content("https://x.com", "v")
        assert cache.invalidate("https://x.com") is True
        assert cache.invalidate("https://x.com") is False

    def test_failure_degrades_to_miss(self, cache: CacheService, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise RuntimeError("store exploded")

        monkeypatch.setattr(cache.content, "get", boom)
        monkeypatch.setattr(cache.content, "set", boom)
        assert cache.get_content("https://x.com") is None
        assert cache.cache_content("https://x.com", "v") is False

    def test_metadata_tier_has_double_ttl(self, cache: CacheService, clock: FakeClock) -> None:
        cache.cache_metadata("text:https://x.com", {"text": "hi"})
        clock.advance(100)
        assert cache.get_metadata("text:https://x.com") == {"text": "hi"}
        clock.advance(20)
        assert cache.get_metadata("text:https://x.com") is None


class TestRateLimit:
    def test_limit_then_reject_then_recover(self, cache: CacheService, clock: FakeClock) -> None:
        for expected_remaining in (2, 1, 0):
            status = cache.check_rate_limit("ip:1.2.3.4")
            assert status.is_limited is False
            assert status.remaining == expected_remaining

        rejected = cache.check_rate_limit("ip:1.2.3.4")
        assert rejected.is_limited is True
        assert rejected.retry_after_seconds > 0
        assert rejected.to_dict()["retryAfter"] == rejected.retry_after_seconds

        clock.advance(1.0)
        assert cache.check_rate_limit("ip:1.2.3.4").is_limited is False

    def test_identifiers_are_independent(self, cache: CacheService) -> None:
        for _ in range(3):
            cache.check_rate_limit("a")
        assert cache.check_rate_limit("a").is_limited is True
        assert cache.check_rate_limit("b").is_limited is False

    def test_sliding_window_prunes_old_entries(self, cache: CacheService, clock: FakeClock) -> None:
        cache.check_rate_limit("a")
        clock.advance(0.6)
        cache.check_rate_limit("a")
        cache.check_rate_limit("a")
        assert cache.check_rate_limit("a").is_limited is True
        clock.advance(0.5)
        status = cache.check_rate_limit("a")
        assert status.is_limited is False
        assert status.request_count == 3

    def test_explicit_limit_overrides_settings(self, cache: CacheService) -> None:
        assert cache.check_rate_limit("x", limit=1).is_limited is False
        assert cache.check_rate_limit("x", limit=1).is_limited is True

    def test_concurrent_checks_never_exceed_limit(self, cache: CacheService) -> None:
        barrier = threading.Barrier(20)

        def check(_):
            barrier.wait()
            return cache.check_rate_limit("burst", limit=5)

        with ThreadPoolExecutor(max_workers=20) as pool:
            statuses = list(pool.map(check, range(20)))

        assert sum(1 for status in statuses if not status.is_limited) == 5
        assert sum(1 for status in statuses if status.is_limited) == 15
        assert cache.check_rate_limit("burst", limit=5).request_count == 5


class TestHousekeeping:
    def test_cleanup_and_clear_all(self, cache: CacheService, clock: FakeClock) -> None:
        cache.cache_content("https://a.com", "a")
        cache.cache_metadata("k", "v")
        clock.advance(61)
        assert cache.cleanup() == 1
        assert cache.clear_all() == {"content": 0, "metadata": 1, "rateLimit": 0}

    def test_health(self, cache: CacheService) -> None:
        cache.cache_content("https://a.com", "a")
        health = cache.health()
        assert health["status"] == "healthy"
        assert health["perStoreKeyCounts"] == {"content": 1, "metadata": 0, "rateLimit": 0}
        assert set(health["hitRates"]) == {"content", "metadata"}

    def test_health_warns_over_threshold(self, tmp_path: Path, clock: FakeClock) -> None:
        settings = Settings(workspace_dir=tmp_path, memory_warning_bytes=10)
        cache = CacheService(settings, clock=clock)
        cache.cache_content("https://a.com", "x" * 100)
        assert cache.health()["status"] == "warning"

    def test_stats_shape(self, cache: CacheService) -> None:
        stats = cache.stats()
        assert set(stats) == {"content", "metadata", "rateLimit", "system"}
        assert "pid" in stats["system"]

    def test_sweeper_lifecycle(self, cache: CacheService) -> None:
        cache.start_sweeper()
        assert cache._sweeper is not None and cache._sweeper.is_alive()
        cache.stop_sweeper()
        assert cache._sweeper is None
