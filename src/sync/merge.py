"""Pure merge of a delta page into the device's local state.

``merge_batch`` never touches favourites except to flag them ``orphaned``
when their canonical record is retired (and to clear the flag if the
record comes back).  Applying the same page twice yields the same state,
which is what makes a crash between merge and cursor persistence safe.
"""

from __future__ import annotations

from datetime import UTC, datetime

from src.models.local import CachedScheme, LocalState
from src.models.scheme import DeltaBatch
from src.services.errors import SyncMergeError


def merge_batch(state: LocalState, batch: DeltaBatch, *, synced_at: datetime | None = None) -> LocalState:
    """Return a new :class:`LocalState` with *batch* applied.

    Records already cached at the same or a later store sequence are left
    untouched, so replayed or reordered pages cannot regress the cache.

    Raises
    ------
    SyncMergeError
        If the page is internally inconsistent.
    """
    synced_at = synced_at or datetime.now(UTC)
    schemes = dict(state.schemes)
    favorites = dict(state.favorites)

    for record in batch.schemes:
        if not record.id:
            raise SyncMergeError("Delta page contains a record without an id")
        if record.sequence > batch.cursor:
            raise SyncMergeError(
                f"Record {record.id} has sequence {record.sequence} beyond page cursor {batch.cursor}"
            )

        cached = schemes.get(record.id)
        if cached is not None and cached.sequence >= record.sequence:
            continue

        favorite = favorites.get(record.id)
        if record.deleted:
            if favorite is None:
                schemes.pop(record.id, None)
            elif not favorite.orphaned:
                # The last known copy stays readable for the user.
                favorites[record.id] = favorite.model_copy(update={"orphaned": True})
            continue

        schemes[record.id] = CachedScheme.from_record(record, synced_at)
        if favorite is not None and favorite.orphaned:
            favorites[record.id] = favorite.model_copy(update={"orphaned": False})

    return state.model_copy(
        update={
            "schemes": schemes,
            "favorites": favorites,
            "cursor": max(state.cursor, batch.cursor),
        }
    )


def rebase_state(state: LocalState) -> LocalState:
    """Prepare *state* for a full re-sync after the server reset its sequence.

    Cached sequences from the old numbering would block every incoming
    record, so the cursor returns to 0 and only favourited copies are kept,
    with their sequence cleared so any fresh record replaces them.
    """
    schemes = {
        scheme_id: cached.model_copy(update={"sequence": 0})
        for scheme_id, cached in state.schemes.items()
        if scheme_id in state.favorites
    }
    return state.model_copy(update={"schemes": schemes, "cursor": 0})
