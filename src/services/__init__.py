"""SchemeWatch service layer -- cache, canonical store, notifications, errors."""

from __future__ import annotations

from src.services.cache import CacheManager, InMemoryCacheBackend, RedisCacheBackend
from src.services.errors import (
    DetailAccessDenied,
    FetchError,
    NotifyError,
    ParseError,
    SchemeWatchError,
    StoreConflictError,
    SyncFetchError,
    SyncMergeError,
    UnknownSourceError,
)
from src.services.notifications import ChangeNotifier, InMemoryPushTransport, RedisPushTransport
from src.services.store import SchemeStore

__all__ = [
    "CacheManager",
    "ChangeNotifier",
    "DetailAccessDenied",
    "FetchError",
    "InMemoryCacheBackend",
    "InMemoryPushTransport",
    "NotifyError",
    "ParseError",
    "RedisCacheBackend",
    "SchemeStore",
    "SchemeWatchError",
    "StoreConflictError",
    "SyncFetchError",
    "SyncMergeError",
    "UnknownSourceError",
]
