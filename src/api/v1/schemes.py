"""Scheme API endpoints consumed by devices.

``GET /schemes?since=<cursor>&limit=<n>`` is the delta feed: every record
written after ``cursor`` (tombstones included), ordered by store sequence.
A device starts at ``since=0`` and keeps the returned ``cursor``.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from src.models.scheme import DeltaBatch, SchemeRecord

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/schemes", tags=["schemes"])

_MAX_LIMIT = 500


def _get_store(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialised.")
    return store


@router.get("", response_model=DeltaBatch)
async def list_schemes_since(
    request: Request,
    since: int = Query(default=0, ge=0, description="Cursor returned by the previous call"),
    limit: int = Query(default=100, ge=1, le=_MAX_LIMIT),
) -> DeltaBatch:
    """Records changed since ``since``, at most ``limit`` of them."""
    store = _get_store(request)
    batch = await store.list_since(since, limit)
    logger.debug("api.schemes.delta", since=since, returned=len(batch.schemes), cursor=batch.cursor)
    return batch


@router.get("/{scheme_id}", response_model=SchemeRecord)
async def get_scheme(scheme_id: str, request: Request) -> SchemeRecord:
    """Full canonical record.  Retired schemes are reported as not found."""
    store = _get_store(request)
    record = await store.get(scheme_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Scheme '{scheme_id}' not found.")
    return record
