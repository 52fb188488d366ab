"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the
FastAPI application only needs to include a single router.

Includes:
    * Public: schemes delta feed and detail, health probes
    * Admin: ingestion triggers, source-change webhook, retirement
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import health, ingestion, schemes

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(schemes.router)
api_router.include_router(health.router)
api_router.include_router(ingestion.router)
