"""Device-side sync client.

Keeps a local projection of the canonical store up to date by delta sync
and serves all reads from it.  Two things trigger a sync:

    * a periodic timer (every ``sync_interval_hours``), and
    * push notifications drained from an inbound queue.  A notification is
      only a trigger; its payload is never treated as data.

State machine::

    IDLE --sync()--> SYNCING --ok--> IDLE
                        |
                        +--retries exhausted--> FAILED --sync()--> SYNCING

A sync requested while one is running sets a pending flag; the running
pass then performs exactly one follow-up pass.  Passes never overlap.

Each page is merged into a new immutable :class:`LocalState` and swapped
in with a single assignment, so readers see the state either before or
after a page, never half of one.  The cursor lives in the same state
object and therefore advances only once its page has been merged.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.enums import Gender, SyncState
from src.models.local import CachedScheme, FavoriteAnnotation, LocalState
from src.models.scheme import DeltaBatch, SchemeRecord
from src.services.errors import DetailAccessDenied, SyncFetchError, SyncMergeError
from src.sync.api_client import SchemeApiClient
from src.sync.local_store import LocalStateStore
from src.sync.merge import merge_batch, rebase_state

logger = structlog.get_logger(__name__)

DetailGate = Callable[[str], bool | Awaitable[bool]]

_MAX_PAGES_PER_PASS = 1_000


class SyncClient:
    """Delta-sync client with local favourites.

    Parameters
    ----------
    api:
        Client for the schemes API.
    local_store:
        Persistence boundary for :class:`LocalState`.
    batch_limit:
        Page size requested from ``GET /schemes``.
    max_attempts:
        Attempts per pass before the client enters ``FAILED``.
    backoff_seconds:
        Base of the exponential backoff between attempts.
    interval_hours:
        Period of :meth:`run_periodic`.
    detail_gate:
        Optional callable consulted before :meth:`fetch_detail`; returning
        ``False`` denies the fetch (e.g. for paid content).
    """

    def __init__(
        self,
        api: SchemeApiClient,
        local_store: LocalStateStore,
        *,
        batch_limit: int = 100,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        interval_hours: float = 6.0,
        detail_gate: DetailGate | None = None,
    ) -> None:
        self._api = api
        self._local_store = local_store
        self._batch_limit = batch_limit
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._interval_seconds = interval_hours * 3600
        self._detail_gate = detail_gate

        self._local = LocalState()
        self._state = SyncState.IDLE
        self._pass_lock = asyncio.Lock()
        self._pending = False
        self._passes = 0

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        api: SchemeApiClient | None = None,
        local_store: LocalStateStore | None = None,
        detail_gate: DetailGate | None = None,
    ) -> SyncClient:
        return cls(
            api or SchemeApiClient(settings.api_base_url),
            local_store or LocalStateStore(settings.local_state_path or None),
            batch_limit=settings.sync_batch_limit,
            max_attempts=settings.sync_max_attempts,
            interval_hours=settings.sync_interval_hours,
            detail_gate=detail_gate,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state.  Call once before syncing or reading."""
        self._local = await self._local_store.load()

    async def close(self) -> None:
        await self._api.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def snapshot(self) -> LocalState:
        """Current immutable local state."""
        return self._local

    @property
    def cursor(self) -> int:
        return self._local.cursor

    @property
    def last_synced_at(self) -> datetime | None:
        """When the cache last completed a sync; shown as "last updated" when FAILED."""
        return self._local.last_synced_at

    @property
    def passes_completed(self) -> int:
        return self._passes

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> SyncState:
        """Run a sync pass, or coalesce into the one already running."""
        if self._pass_lock.locked():
            self._pending = True
            logger.debug("sync.request_coalesced")
            return self._state

        async with self._pass_lock:
            while True:
                self._pending = False
                await self._run_pass_with_retry()
                if not self._pending:
                    break
                logger.debug("sync.follow_up_pass")
        return self._state

    async def _run_pass_with_retry(self) -> None:
        self._state = SyncState.SYNCING
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((SyncFetchError, SyncMergeError)),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=self._backoff * 30),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            pages = await retrying(self._run_pass)
        except (SyncFetchError, SyncMergeError) as exc:
            self._state = SyncState.FAILED
            self._local = self._local.model_copy(update={"last_error": str(exc)})
            await self._persist()
            logger.warning(
                "sync.pass_failed",
                cursor=self._local.cursor,
                attempts=self._max_attempts,
                error=str(exc),
            )
            return

        self._passes += 1
        self._state = SyncState.IDLE
        logger.info(
            "sync.pass_complete",
            pages=pages,
            cursor=self._local.cursor,
            schemes=len(self._local.schemes),
        )

    async def _run_pass(self) -> int:
        pages = 0
        while pages < _MAX_PAGES_PER_PASS:
            batch: DeltaBatch = await self._api.fetch_delta(self._local.cursor, self._batch_limit)
            if batch.reset:
                logger.warning("sync.cursor_reset", cursor=self._local.cursor)
                self._local = rebase_state(self._local)
                await self._persist()
            if not batch.schemes:
                break
            self._local = merge_batch(self._local, batch)
            await self._persist()
            pages += 1
            if not batch.has_more:
                break

        self._local = self._local.model_copy(
            update={"last_synced_at": datetime.now(UTC), "last_error": None}
        )
        await self._persist()
        return pages

    async def _persist(self) -> None:
        try:
            await self._local_store.save(self._local)
        except OSError as exc:
            # The merged page is replayed from the persisted cursor next start.
            logger.error("sync.persist_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_periodic(self) -> None:
        """Sync now and then every ``interval_hours`` until cancelled."""
        while True:
            await self.sync()
            await asyncio.sleep(self._interval_seconds)

    async def drain_notifications(self, queue: asyncio.Queue[dict[str, str]]) -> None:
        """Consume push payloads from *queue*, syncing once per burst."""
        while True:
            payload = await queue.get()
            burst = 1
            while not queue.empty():
                queue.get_nowait()
                burst += 1
            logger.info(
                "sync.notification_received",
                event_type=payload.get("type"),
                scheme_id=payload.get("scheme_id"),
                burst=burst,
            )
            await self.sync()

    # ------------------------------------------------------------------
    # Reads (served from the local cache only)
    # ------------------------------------------------------------------

    def get(self, scheme_id: str) -> CachedScheme | None:
        return self._local.schemes.get(scheme_id)

    def query(self, age: int | None = None, gender: Gender | str | None = None) -> list[CachedScheme]:
        """Cached schemes applicable to a child of *age* and *gender*, by title."""
        matches = [s for s in self._local.schemes.values() if s.matches(age, gender)]
        return sorted(matches, key=lambda s: (s.title.lower(), s.id))

    def list_favorites(self) -> list[CachedScheme]:
        """Cached copies of favourited schemes, most recently saved first."""
        ordered = sorted(self._local.favorites.values(), key=lambda f: f.saved_at, reverse=True)
        return [self._local.schemes[f.scheme_id] for f in ordered if f.scheme_id in self._local.schemes]

    def favorite(self, scheme_id: str) -> FavoriteAnnotation | None:
        return self._local.favorites.get(scheme_id)

    # ------------------------------------------------------------------
    # Favourites
    # ------------------------------------------------------------------

    async def add_favorite(self, scheme_id: str) -> FavoriteAnnotation:
        """Favourite a cached scheme.  Re-adding keeps the original ``saved_at``.

        Raises
        ------
        KeyError
            If the scheme is not in the local cache.
        """
        existing = self._local.favorites.get(scheme_id)
        if existing is not None:
            return existing
        if scheme_id not in self._local.schemes:
            raise KeyError(f"Scheme {scheme_id} is not cached locally")

        annotation = FavoriteAnnotation(scheme_id=scheme_id)
        self._local = self._local.model_copy(
            update={"favorites": {**self._local.favorites, scheme_id: annotation}}
        )
        await self._persist()
        return annotation

    async def remove_favorite(self, scheme_id: str) -> bool:
        """Drop a favourite.  An orphaned favourite also drops its cached copy."""
        annotation = self._local.favorites.get(scheme_id)
        if annotation is None:
            return False

        favorites = {k: v for k, v in self._local.favorites.items() if k != scheme_id}
        schemes = self._local.schemes
        if annotation.orphaned:
            schemes = {k: v for k, v in schemes.items() if k != scheme_id}
        self._local = self._local.model_copy(update={"favorites": favorites, "schemes": schemes})
        await self._persist()
        return True

    # ------------------------------------------------------------------
    # On-demand detail
    # ------------------------------------------------------------------

    async def fetch_detail(self, scheme_id: str) -> SchemeRecord | None:
        """Fetch a scheme's full record from the API and refresh its cached copy.

        Raises
        ------
        DetailAccessDenied
            If the detail gate refuses the request.
        SyncFetchError
            If the API cannot be reached.
        """
        if self._detail_gate is not None:
            allowed = self._detail_gate(scheme_id)
            if inspect.isawaitable(allowed):
                allowed = await allowed
            if not allowed:
                raise DetailAccessDenied(f"Detail access to {scheme_id} was denied")

        record = await self._api.fetch_scheme(scheme_id)
        if record is None:
            return None

        cached = self._local.schemes.get(scheme_id)
        if cached is None or cached.sequence < record.sequence:
            self._local = self._local.model_copy(
                update={"schemes": {**self._local.schemes, scheme_id: CachedScheme.from_record(record)}}
            )
            await self._persist()
        return record


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("sync.retrying", attempt=retry_state.attempt_number, error=str(exc))
