"""Change detector -- classifies drafts against the canonical store.

A scheme's identity is derived from its canonical source URL, and its
content is summarised by a fingerprint over the canonical fields only.
Re-ingesting identical content therefore produces no write and no event,
and fetch-time bookkeeping never registers as a change.

Per draft, under the store's per-id lock:

    * not stored (or tombstoned)  -> ``NEW``, insert, emit ``new_scheme``
    * stored, fingerprint differs -> ``UPDATED``, replace, emit ``scheme_updated``
    * stored, fingerprint equal   -> ``UNCHANGED``, nothing written

A live record belongs to the source that first reported it.  The same URL
arriving from a different source is left alone (``source_conflict``) so
two sources cannot overwrite each other on every run.

Events are published only after the write commits.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit
from uuid import NAMESPACE_URL, uuid5

import orjson
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from src.models.enums import ChangeKind
from src.models.events import ChangeEvent
from src.models.scheme import SchemeDraft, SchemeRecord
from src.services.errors import StoreConflictError

if TYPE_CHECKING:
    from src.services.notifications import ChangeNotifier
    from src.services.store import SchemeStore

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Identity and fingerprint
# ---------------------------------------------------------------------------


def canonical_url(url: str) -> str:
    """Lower-case scheme and host, drop a trailing path slash.

    Query and fragment are kept: several schemes may live on one page
    under different anchors.
    """
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/") or ""
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, parts.fragment))


def scheme_id_for(source_url: str) -> str:
    """Stable scheme id: UUIDv5 of the canonical source URL."""
    return str(uuid5(NAMESPACE_URL, canonical_url(source_url)))


def compute_fingerprint(draft: SchemeDraft) -> str:
    """SHA-256 over the canonical fields, serialised with sorted keys."""
    fields = draft.canonical_fields()
    fields["source_url"] = canonical_url(draft.source_url)
    return hashlib.sha256(orjson.dumps(fields, option=orjson.OPT_SORT_KEYS)).hexdigest()


@dataclass(frozen=True, slots=True)
class ChangeOutcome:
    kind: ChangeKind
    record: SchemeRecord
    event: ChangeEvent | None = None
    notified: bool | None = None  # None when no notifier is configured
    source_conflict: bool = False


# ---------------------------------------------------------------------------
# ChangeDetector
# ---------------------------------------------------------------------------


class ChangeDetector:
    """Applies drafts to the store and publishes change events.

    Parameters
    ----------
    store:
        Canonical store.
    notifier:
        Optional notifier; ``None`` disables publishing.
    max_attempts:
        Attempts for a single-record transaction that loses an
        optimistic-concurrency race.
    """

    __slots__ = ("_max_attempts", "_notifier", "_store")

    def __init__(
        self,
        store: SchemeStore,
        notifier: ChangeNotifier | None = None,
        *,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._max_attempts = max_attempts

    async def process(self, draft: SchemeDraft, *, source_key: str | None = None) -> ChangeOutcome:
        """Classify *draft*, persist it if it changed, and notify.

        Raises
        ------
        StoreConflictError
            If every attempt lost a revision race.
        """
        scheme_id = scheme_id_for(draft.source_url)
        fingerprint = compute_fingerprint(draft)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StoreConflictError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_random(0, 0.05),
            reraise=True,
        )
        outcome: ChangeOutcome = await retrying(self._apply, scheme_id, fingerprint, draft, source_key)

        if outcome.event is None:
            return outcome

        logger.info(
            "change_detector.scheme_changed",
            scheme_id=scheme_id,
            kind=outcome.kind.value,
            sequence=outcome.record.sequence,
            source=source_key,
        )
        if self._notifier is None:
            return outcome
        notified = await self._notifier.publish(outcome.event)
        return ChangeOutcome(outcome.kind, outcome.record, outcome.event, notified)

    async def _apply(
        self,
        scheme_id: str,
        fingerprint: str,
        draft: SchemeDraft,
        source_key: str | None,
    ) -> ChangeOutcome:
        async with self._store.lock(scheme_id):
            existing = await self._store.get(scheme_id, include_deleted=True)
            if existing is not None and not existing.deleted and existing.fingerprint == fingerprint:
                return ChangeOutcome(ChangeKind.UNCHANGED, existing)
            if _owned_elsewhere(existing, source_key):
                logger.warning(
                    "change_detector.source_conflict",
                    scheme_id=scheme_id,
                    owner=existing.source_key,
                    source=source_key,
                )
                return ChangeOutcome(ChangeKind.UNCHANGED, existing, source_conflict=True)

            now = datetime.now(UTC)
            record = SchemeRecord(
                **draft.model_dump(),
                id=scheme_id,
                fingerprint=fingerprint,
                last_updated=now,
                first_seen=existing.first_seen if existing is not None else now,
                source_key=source_key,
            )
            stored = await self._store.upsert(
                record,
                expected_revision=existing.revision if existing is not None else None,
            )

        if existing is None or existing.deleted:
            return ChangeOutcome(ChangeKind.NEW, stored, ChangeEvent.created(scheme_id))
        return ChangeOutcome(ChangeKind.UPDATED, stored, ChangeEvent.updated(scheme_id))


def _owned_elsewhere(existing: SchemeRecord | None, source_key: str | None) -> bool:
    if existing is None or existing.deleted:
        return False
    return bool(existing.source_key and source_key and existing.source_key != source_key)
