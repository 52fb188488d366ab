"""Device-side delta sync: local cache, favourites and the sync state machine."""

from src.sync.api_client import SchemeApiClient
from src.sync.client import SyncClient
from src.sync.local_store import LocalStateStore
from src.sync.merge import merge_batch, rebase_state

__all__ = [
    "LocalStateStore",
    "SchemeApiClient",
    "SyncClient",
    "merge_batch",
    "rebase_state",
]
