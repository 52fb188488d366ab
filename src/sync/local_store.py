"""Durable device state: the cached scheme projection, favourites and cursor.

Persisted as one JSON document so the cursor and the records it covers
are always written together.  Writes go to a temp file that is atomically
renamed over the previous copy; a crash leaves either the old or the new
state on disk, never a mix.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import orjson
import structlog
from pydantic import ValidationError

from src.models.local import LocalState

logger = structlog.get_logger(__name__)


class LocalStateStore:
    """Load/save boundary for :class:`LocalState`.

    Parameters
    ----------
    path:
        JSON file location.  ``None`` keeps state in memory only.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._lock = asyncio.Lock()
        self._memory: LocalState | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    async def load(self) -> LocalState:
        """Return the persisted state, or a fresh one if none exists.

        An unreadable file is moved aside to ``<name>.corrupt`` and a fresh
        state is returned.
        """
        if self._path is None:
            return self._memory or LocalState()
        if not self._path.exists():
            return LocalState()

        raw = await asyncio.to_thread(self._path.read_bytes)
        try:
            state = LocalState.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as exc:
            corrupt = self._path.with_suffix(self._path.suffix + ".corrupt")
            await asyncio.to_thread(os.replace, self._path, corrupt)
            logger.error("sync.local_state_corrupt", path=str(self._path), moved_to=str(corrupt), error=str(exc))
            return LocalState()

        logger.info(
            "sync.local_state_loaded",
            cursor=state.cursor,
            schemes=len(state.schemes),
            favorites=len(state.favorites),
        )
        return state

    async def save(self, state: LocalState) -> None:
        if self._path is None:
            self._memory = state
            return
        data = orjson.dumps(state.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
        async with self._lock:
            await asyncio.to_thread(_write_atomic, self._path, data)


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
