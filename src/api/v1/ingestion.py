"""Admin ingestion API endpoints.

All endpoints require admin-level access.

Endpoints
---------
- ``POST   /api/v1/admin/ingest``                    -- Run a full ingestion.
- ``POST   /api/v1/admin/ingest/sources/{key}``      -- Ingest a single source.
- ``POST   /api/v1/admin/ingest/source-change``      -- Change webhook from a source.
- ``GET    /api/v1/admin/ingest/status``             -- Last result and scheduler state.
- ``DELETE /api/v1/admin/schemes/{scheme_id}``       -- Retire a scheme.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, model_validator

from src.middleware.auth import require_admin_api_key
from src.models.events import ChangeEvent
from src.services.errors import UnknownSourceError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin", "ingestion"],
    dependencies=[Depends(require_admin_api_key)],
)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class IngestionTriggerResponse(BaseModel):
    """Response returned after an ingestion run."""

    status: str
    message: str
    result: dict[str, Any] | None = None


class IngestionStatusResponse(BaseModel):
    status: str
    running: bool = False
    last_result: dict[str, Any] | None = None
    scheduler_running: bool = False
    last_run: str | None = None
    last_trigger: str | None = None
    sources: int = 0
    schemes: int = 0
    notifications: dict[str, int] | None = None


class SourceChangeRequest(BaseModel):
    """Webhook body sent by a scraper or state feed that has new content."""

    source_key: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def _require_one(self) -> SourceChangeRequest:
        if not self.source_key and not self.url:
            raise ValueError("Provide either source_key or url")
        return self


class SourceChangeResponse(BaseModel):
    status: str
    source_key: str


class RetireResponse(BaseModel):
    status: str
    scheme_id: str
    sequence: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_pipeline(request: Request):
    """Retrieve the ingestion pipeline from app state, or raise 503."""
    pipeline = getattr(request.app.state, "ingestion_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Ingestion pipeline not initialised.")
    return pipeline


def _summary(result) -> str:
    return (
        f"{result.new_schemes} new, {result.updated_schemes} updated, "
        f"{result.unchanged_schemes} unchanged, {result.failed_sources} failed sources "
        f"in {result.duration_seconds:.1f}s."
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/ingest", response_model=IngestionTriggerResponse)
async def trigger_full_ingestion(request: Request) -> IngestionTriggerResponse:
    """Run a full ingestion over every enabled source.

    Failed sources are reported in the result rather than failing the call.
    """
    pipeline = _get_pipeline(request)
    logger.info("api.admin.ingest.full_triggered")

    result = await pipeline.run_full_ingestion()
    return IngestionTriggerResponse(
        status="completed",
        message=f"Full ingestion completed: {_summary(result)}",
        result=result.to_dict(),
    )


@router.post("/ingest/sources/{source_key}", response_model=IngestionTriggerResponse)
async def trigger_source_ingestion(source_key: str, request: Request) -> IngestionTriggerResponse:
    """Ingest a single registered source."""
    pipeline = _get_pipeline(request)
    logger.info("api.admin.ingest.source_triggered", source=source_key)

    try:
        result = await pipeline.run_source(source_key)
    except UnknownSourceError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return IngestionTriggerResponse(
        status="completed",
        message=f"Ingestion of {source_key} completed: {_summary(result)}",
        result=result.to_dict(),
    )


@router.post("/ingest/source-change", response_model=SourceChangeResponse, status_code=202)
async def source_change_webhook(
    body: SourceChangeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> SourceChangeResponse:
    """Accept a change notification from a source and ingest it in the background."""
    pipeline = _get_pipeline(request)
    try:
        if body.source_key:
            source = pipeline.registry.get(body.source_key)
        else:
            source = pipeline.registry.find_by_url(body.url)
    except UnknownSourceError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        background_tasks.add_task(scheduler.run_source_update, source.key)
    else:
        background_tasks.add_task(pipeline.run_source, source.key)

    logger.info("api.admin.ingest.source_change_accepted", source=source.key)
    return SourceChangeResponse(status="accepted", source_key=source.key)


@router.get("/ingest/status", response_model=IngestionStatusResponse)
async def get_ingestion_status(request: Request) -> IngestionStatusResponse:
    """Last ingestion result, scheduler state and store size."""
    pipeline = getattr(request.app.state, "ingestion_pipeline", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    store = getattr(request.app.state, "store", None)
    notifier = getattr(request.app.state, "notifier", None)

    last_result: dict[str, Any] | None = None
    if pipeline is not None and pipeline.last_result is not None:
        last_result = pipeline.last_result.to_dict()

    # Fall back to the cached report of a previous process.
    if last_result is None:
        cache = getattr(request.app.state, "cache", None)
        if cache is not None:
            last_result = await cache.get("ingestion:last_result")

    return IngestionStatusResponse(
        status="ready" if pipeline is not None else "not_initialised",
        running=pipeline is not None and pipeline.is_running,
        last_result=last_result,
        scheduler_running=scheduler is not None and scheduler.is_running,
        last_run=scheduler.last_run.isoformat() if scheduler is not None and scheduler.last_run else None,
        last_trigger=scheduler.last_trigger if scheduler is not None else None,
        sources=len(pipeline.registry) if pipeline is not None else 0,
        schemes=store.count() if store is not None else 0,
        notifications=notifier.stats() if notifier is not None else None,
    )


@router.delete("/schemes/{scheme_id}", response_model=RetireResponse)
async def retire_scheme(scheme_id: str, request: Request) -> RetireResponse:
    """Retire a scheme.  Devices learn of it as a tombstone in their next delta."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialised.")

    tombstone = await store.retire(scheme_id)
    if tombstone is None:
        raise HTTPException(status_code=404, detail=f"Scheme '{scheme_id}' not found.")
    await store.save()

    notifier = getattr(request.app.state, "notifier", None)
    if notifier is not None:
        await notifier.publish(ChangeEvent.updated(scheme_id))

    logger.info("api.admin.scheme_retired", scheme_id=scheme_id)
    return RetireResponse(status="retired", scheme_id=scheme_id, sequence=tombstone.sequence)
