"""Liveness and readiness probes.

``/health`` answers as long as the process serves requests.  ``/health/ready``
reports on the components a device-facing deployment needs: the cache
round-trip, the canonical store, the ingestion pipeline and the notifier.
A missing store or pipeline makes the instance ``degraded``; a missing
cache or notifier is reported but tolerated.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_PROBE_KEY = "_health_check"


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Overall status plus one line per component."""

    status: str
    checks: dict[str, str]
    store_sequence: int | None = None


async def _check_cache(cache) -> tuple[str, bool]:
    if cache is None:
        return "not_configured", True
    await cache.set(_PROBE_KEY, "ok", ttl_seconds=10)
    if await cache.get(_PROBE_KEY) != "ok":
        return "degraded", False
    return ("ok (redis)" if cache.redis_available else "ok (in-memory)"), True


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; never touches downstream services."""
    started = getattr(request.app.state, "start_time", None) or time.time()
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - started, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    state = request.app.state
    checks: dict[str, str] = {}

    checks["cache"], ready = await _check_cache(getattr(state, "cache", None))

    store = getattr(state, "store", None)
    if store is None:
        checks["store"] = "not_initialised"
        ready = False
    else:
        checks["store"] = f"ok ({store.count()} schemes)"

    pipeline = getattr(state, "ingestion_pipeline", None)
    if pipeline is None:
        checks["ingestion"] = "not_initialised"
        ready = False
    else:
        running = " running" if pipeline.is_running else ""
        checks["ingestion"] = f"ok ({len(pipeline.registry)} sources{running})"

    notifier = getattr(state, "notifier", None)
    checks["notifier"] = f"ok (topic {notifier.topic})" if notifier is not None else "not_configured"

    status = "ready" if ready else "degraded"
    logger.info("health.readiness", status=status, **checks)
    return ReadinessResponse(
        status=status,
        checks=checks,
        store_sequence=store.sequence if store is not None else None,
    )
