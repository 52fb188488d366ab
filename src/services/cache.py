"""Key-value cache with a Redis primary and an in-process LRU fallback.

Used for small, expendable state: HTTP validators (ETag / Last-Modified)
remembered per source URL, and the most recent ingestion report.  Values
are JSON-encoded with orjson.  If Redis is unreachable every operation
degrades to the in-memory backend; the cache never blocks ingestion.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import time
from collections import OrderedDict
from typing import Any, Protocol

import orjson
import structlog

logger = structlog.get_logger(__name__)


class CacheBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class RedisCacheBackend:
    """``redis.asyncio`` client with a pooled connection."""

    __slots__ = ("_redis",)

    def __init__(self, url: str) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.Redis.from_url(url, decode_responses=False)

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCacheBackend:
    """Bounded LRU mapping with per-entry expiry on the monotonic clock."""

    __slots__ = ("_entries", "_lock", "_max_size")

    def __init__(self, *, max_size: int = 2_048) -> None:
        self._max_size = max_size
        self._entries: OrderedDict[str, tuple[bytes, float | None]] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and time.monotonic() > expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds is not None else None
        async with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# CacheManager
# ---------------------------------------------------------------------------


def url_cache_key(prefix: str, url: str) -> str:
    """Short deterministic key for a URL (raw URLs make poor Redis keys)."""
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:24]
    return f"{prefix}:{digest}"


class CacheManager:
    """JSON cache facade that prefers Redis and falls back to memory.

    Parameters
    ----------
    redis_url:
        Redis connection string.  ``None`` or ``""`` runs memory-only.
    namespace:
        Prefix prepended to every key, e.g. ``"schemewatch:"``.
    """

    __slots__ = ("_fallback", "_namespace", "_redis", "_redis_ok")

    def __init__(self, *, redis_url: str | None = None, namespace: str = "") -> None:
        self._namespace = namespace
        self._fallback = InMemoryCacheBackend()
        self._redis: RedisCacheBackend | None = None
        # None until the first operation probes Redis.
        self._redis_ok: bool | None = None
        if redis_url:
            try:
                self._redis = RedisCacheBackend(redis_url)
            except Exception:
                logger.warning("cache.redis_init_failed", redis_url=redis_url)

    async def _call(self, method: str, key: str, *args: Any, **kwargs: Any) -> Any:
        full_key = f"{self._namespace}{key}"
        if self._redis is not None and self._redis_ok is None:
            self._redis_ok = await self._redis.ping()
            if self._redis_ok:
                logger.info("cache.redis_connected")
            else:
                logger.warning("cache.redis_unavailable_using_inmemory")
        if self._redis is not None and self._redis_ok:
            try:
                return await getattr(self._redis, method)(full_key, *args, **kwargs)
            except Exception:
                logger.warning("cache.redis_op_failed", method=method, key=full_key)
                self._redis_ok = False
        return await getattr(self._fallback, method)(full_key, *args, **kwargs)

    async def get(self, key: str, default: Any = None) -> Any:
        raw: bytes | None = await self._call("get", key)
        if raw is None:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return default

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await self._call("set", key, orjson.dumps(value), ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    @property
    def redis_available(self) -> bool:
        return bool(self._redis is not None and self._redis_ok)

    async def close(self) -> None:
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
