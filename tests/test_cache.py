"""Tests for the cache layer (memory-only; Redis is never contacted)."""

from __future__ import annotations

import time

import pytest

from src.services.cache import CacheManager, InMemoryCacheBackend, url_cache_key


class TestInMemoryCacheBackend:
    async def test_set_and_get(self):
        backend = InMemoryCacheBackend()
        await backend.set("k", b"v")
        assert await backend.get("k") == b"v"

    async def test_missing_key(self):
        assert await InMemoryCacheBackend().get("nope") is None

    async def test_lru_eviction(self):
        backend = InMemoryCacheBackend(max_size=2)
        await backend.set("a", b"1")
        await backend.set("b", b"2")
        await backend.get("a")  # touch a, so b is least recently used
        await backend.set("c", b"3")
        assert await backend.get("b") is None
        assert await backend.get("a") == b"1"
        assert len(backend) == 2

    async def test_expiry(self, monkeypatch):
        backend = InMemoryCacheBackend()
        now = time.monotonic()
        monkeypatch.setattr("src.services.cache.time.monotonic", lambda: now)
        await backend.set("k", b"v", ttl_seconds=10)
        monkeypatch.setattr("src.services.cache.time.monotonic", lambda: now + 11)
        assert await backend.get("k") is None
        assert len(backend) == 0

    async def test_delete(self):
        backend = InMemoryCacheBackend()
        await backend.set("k", b"v")
        await backend.delete("k")
        assert await backend.get("k") is None


class TestCacheManager:
    @pytest.fixture
    def cache(self):
        return CacheManager(namespace="test:")

    async def test_json_round_trip(self, cache):
        await cache.set("report", {"new": 1, "sources": ["a"]})
        assert await cache.get("report") == {"new": 1, "sources": ["a"]}

    async def test_default_for_missing(self, cache):
        assert await cache.get("missing", default={}) == {}

    async def test_delete(self, cache):
        await cache.set("k", 1)
        await cache.delete("k")
        assert await cache.get("k") is None

    def test_memory_only_reports_no_redis(self, cache):
        assert cache.redis_available is False


class TestUrlCacheKey:
    def test_deterministic_and_prefixed(self):
        key = url_cache_key("validators", "https://gov.example/feed?page=1")
        assert key == url_cache_key("validators", "https://gov.example/feed?page=1")
        assert key.startswith("validators:")
        assert len(key) == len("validators:") + 24

    def test_distinct_urls_distinct_keys(self):
        assert url_cache_key("v", "https://a.example") != url_cache_key("v", "https://b.example")
