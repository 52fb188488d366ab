"""SchemeWatch FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the ingestion services (cache, store, notifier,
fetcher, pipeline, scheduler).  Services are built by :func:`create_app`
and handed to each other through their constructors; request handlers
reach them through ``app.state``.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import Settings
from config.settings import settings as default_settings
from src.api.router import api_router

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

__version__ = "0.1.0"


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging(settings: Settings) -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the ingestion services.

    On startup:
      1. Initialise the cache manager
      2. Load the canonical store snapshot
      3. Build the push transport and change notifier
      4. Build the source registry, fetcher and change detector
      5. Create the ingestion pipeline and start the scheduler
      6. Store everything on ``app.state``

    On shutdown:
      - Stop the scheduler, save the store, close HTTP clients and caches.
    """
    settings: Settings = app.state.settings
    _configure_logging(settings)
    logger.info("app.startup", env=settings.env, push_transport=settings.push_transport)

    app.state.start_time = time.time()

    # -- 1. Cache -----------------------------------------------------------
    from src.services.cache import CacheManager

    cache = CacheManager(redis_url=settings.redis_url or None, namespace="schemewatch:")
    app.state.cache = cache
    logger.info("app.cache_initialised")

    # -- 2. Store -----------------------------------------------------------
    from src.services.store import SchemeStore

    store = SchemeStore.from_settings(settings)
    loaded = await store.load()
    app.state.store = store
    logger.info("app.store_initialised", records=loaded, persistent=bool(settings.store_path))

    # -- 3. Notifier --------------------------------------------------------
    from src.services.notifications import ChangeNotifier, build_transport

    notifier = ChangeNotifier(
        build_transport(settings),
        topic=settings.notification_topic,
        max_attempts=settings.notify_max_attempts,
    )
    app.state.notifier = notifier
    logger.info("app.notifier_initialised", topic=settings.notification_topic)

    # -- 4. Ingestion components --------------------------------------------
    from src.services.ingestion import (
        ChangeDetector,
        IngestionScheduler,
        SchemeIngestionPipeline,
        SourceFetcher,
        SourceRegistry,
    )

    registry = SourceRegistry.from_settings(settings)
    fetcher = SourceFetcher.from_settings(settings, cache=cache)
    detector = ChangeDetector(store, notifier)

    # -- 5. Pipeline and scheduler ------------------------------------------
    pipeline = SchemeIngestionPipeline(
        registry,
        fetcher,
        detector,
        store,
        cache=cache,
        max_concurrency=settings.ingestion_max_concurrency,
    )
    app.state.ingestion_pipeline = pipeline
    logger.info("app.ingestion_pipeline_initialised", sources=len(registry))

    scheduler = IngestionScheduler(pipeline=pipeline, settings=settings)
    scheduler.start()
    app.state.scheduler = scheduler

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await scheduler.stop()
    await store.save()
    await fetcher.close()
    await notifier.close()
    await cache.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application for *settings* (module defaults if omitted)."""
    settings = settings or default_settings

    app = FastAPI(
        title="SchemeWatch API",
        description=(
            "Change-detection feed of child-welfare government schemes. "
            "Devices pull deltas with GET /api/v1/schemes?since=<cursor>."
        ),
        version=__version__,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings

    # -- CORS middleware ----------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "X-Admin-API-Key"],
    )

    app.include_router(api_router)

    @app.get("/api", response_class=ORJSONResponse)
    async def api_info() -> dict:
        """API information endpoint."""
        return {
            "name": "SchemeWatch API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "schemes": "/api/v1/schemes?since=<cursor>&limit=<n>",
                "scheme": "/api/v1/schemes/{scheme_id}",
                "health": "/api/v1/health",
                "ingest": "/api/v1/admin/ingest",
                "source_change": "/api/v1/admin/ingest/source-change",
            },
            "notification_topic": settings.notification_topic,
        }

    return app


app = create_app()


def run() -> None:
    """Serve the default app with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=default_settings.api_host, port=default_settings.api_port)


if __name__ == "__main__":
    run()
