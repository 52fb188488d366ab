"""Canonical scheme store.

Holds the authoritative :class:`SchemeRecord` for every known scheme and a
change log ordered by a monotonically increasing ``sequence``.  Every write
(insert, update, retirement) takes the next sequence number, so a client
holding cursor ``c`` receives exactly the records written after ``c``.

Writes are optimistic: callers pass the ``revision`` they read and the
store rejects the write with :class:`StoreConflictError` if another writer
got there first.  :meth:`SchemeStore.lock` gives callers per-id mutual
exclusion so read-compare-write sequences on one scheme never interleave.

The store optionally persists itself as a JSON snapshot (orjson, written
to a temp file and atomically renamed).
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import orjson
import structlog
from pydantic import ValidationError

from src.models.scheme import DeltaBatch, SchemeRecord
from src.services.errors import StoreConflictError

logger = structlog.get_logger(__name__)

_SNAPSHOT_VERSION = 1


class SchemeStore:
    """In-memory canonical store with an optional durable JSON snapshot.

    Parameters
    ----------
    snapshot_path:
        Where :meth:`save` writes and :meth:`load` reads.  ``None`` keeps
        the store memory-only.
    """

    def __init__(self, *, snapshot_path: str | Path | None = None) -> None:
        self._records: dict[str, SchemeRecord] = {}
        self._sequence = 0
        self._write_lock = asyncio.Lock()
        self._id_locks: dict[str, asyncio.Lock] = {}
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None

    @classmethod
    def from_settings(cls, settings: object) -> SchemeStore:
        return cls(snapshot_path=getattr(settings, "store_path", None) or None)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, scheme_id: str) -> AsyncIterator[None]:
        """Hold the per-id lock for *scheme_id*."""
        lock = self._id_locks.setdefault(scheme_id, asyncio.Lock())
        async with lock:
            yield

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, scheme_id: str, *, include_deleted: bool = False) -> SchemeRecord | None:
        record = self._records.get(scheme_id)
        if record is None or (record.deleted and not include_deleted):
            return None
        return record

    async def list_since(self, cursor: int, limit: int | None = None) -> DeltaBatch:
        """Return records written after *cursor*, oldest first.

        Tombstones are included so clients learn about retirements.  The
        returned ``cursor`` is the sequence of the last record in the page,
        or *cursor* itself when nothing changed.

        A *cursor* beyond the current sequence cannot have come from this
        store (it was rebuilt or restored from an older snapshot), so the
        page is served from 0 and flagged ``reset``.
        """
        reset = cursor > self._sequence
        if reset:
            logger.warning("store.cursor_ahead", cursor=cursor, sequence=self._sequence)
            cursor = 0
        changed = sorted(
            (r for r in self._records.values() if r.sequence > cursor),
            key=lambda r: r.sequence,
        )
        page = changed[:limit] if limit is not None else changed
        return DeltaBatch(
            schemes=page,
            cursor=page[-1].sequence if page else cursor,
            has_more=len(changed) > len(page),
            reset=reset,
        )

    def count(self, *, include_deleted: bool = False) -> int:
        if include_deleted:
            return len(self._records)
        return sum(1 for r in self._records.values() if not r.deleted)

    def all(self, *, include_deleted: bool = False) -> list[SchemeRecord]:
        records = sorted(self._records.values(), key=lambda r: r.sequence)
        if include_deleted:
            return records
        return [r for r in records if not r.deleted]

    @property
    def sequence(self) -> int:
        """Sequence number of the most recent write."""
        return self._sequence

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, record: SchemeRecord, *, expected_revision: int | None = None) -> SchemeRecord:
        """Insert or replace *record* if the stored revision is *expected_revision*.

        ``expected_revision=None`` means "must not exist yet", except that a
        tombstone may be overwritten by passing its revision.

        Returns the stored record with ``revision`` and ``sequence`` assigned.

        Raises
        ------
        StoreConflictError
            If the stored revision differs from *expected_revision*.
        """
        async with self._write_lock:
            current = self._records.get(record.id)
            actual = current.revision if current is not None else None
            if actual != expected_revision:
                raise StoreConflictError(record.id, expected_revision, actual)

            self._sequence += 1
            stored = record.model_copy(
                update={"revision": (actual or 0) + 1, "sequence": self._sequence}
            )
            self._records[record.id] = stored
            return stored

    async def retire(self, scheme_id: str) -> SchemeRecord | None:
        """Tombstone *scheme_id*.  Returns ``None`` if it is unknown or already retired."""
        async with self.lock(scheme_id):
            current = self._records.get(scheme_id)
            if current is None or current.deleted:
                return None
            tombstone = current.model_copy(update={"deleted": True, "last_updated": datetime.now(UTC)})
            stored = await self.upsert(tombstone, expected_revision=current.revision)
        logger.info("store.scheme_retired", scheme_id=scheme_id, sequence=stored.sequence)
        return stored

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Load the snapshot if one exists.  Returns the number of records loaded."""
        if self._snapshot_path is None or not self._snapshot_path.exists():
            return 0
        raw = await asyncio.to_thread(self._snapshot_path.read_bytes)
        try:
            payload = orjson.loads(raw)
            records = [SchemeRecord.model_validate(r) for r in payload.get("records", [])]
        except (orjson.JSONDecodeError, ValidationError, AttributeError) as exc:
            logger.error("store.snapshot_invalid", path=str(self._snapshot_path), error=str(exc))
            raise ValueError(f"Corrupt store snapshot at {self._snapshot_path}") from exc

        async with self._write_lock:
            self._records = {r.id: r for r in records}
            self._sequence = max(
                int(payload.get("sequence", 0)),
                max((r.sequence for r in records), default=0),
            )
        logger.info("store.snapshot_loaded", path=str(self._snapshot_path), records=len(records))
        return len(records)

    async def save(self) -> None:
        if self._snapshot_path is None:
            return
        async with self._write_lock:
            payload = {
                "version": _SNAPSHOT_VERSION,
                "sequence": self._sequence,
                "saved_at": datetime.now(UTC).isoformat(),
                "records": [r.model_dump(mode="json") for r in self._records.values()],
            }
        data = orjson.dumps(payload, option=orjson.OPT_INDENT_2)
        await asyncio.to_thread(_write_atomic, self._snapshot_path, data)
        logger.debug("store.snapshot_saved", path=str(self._snapshot_path), records=len(payload["records"]))


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
