"""Periodic scheduler for the scheme ingestion pipeline.

Runs a full ingestion every ``ingestion_interval_hours`` (default 6) in an
``asyncio`` background task on the application's event loop.  Deployments
that prefer an external trigger (cron, Cloud Scheduler) disable the loop
with ``SCHEMEWATCH_ENABLE_AUTO_INGESTION=false`` and call
``POST /api/v1/admin/ingest`` instead; source owners can also push a
change notification to ``/api/v1/admin/ingest/source-change``.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from src.services.ingestion.pipeline import IngestionResult, SchemeIngestionPipeline

logger = structlog.get_logger(__name__)

_STARTUP_DELAY_SECONDS = 60.0


class IngestionScheduler:
    """Triggers the ingestion pipeline on a fixed interval.

    Parameters
    ----------
    pipeline:
        The :class:`SchemeIngestionPipeline` to execute.
    settings:
        Application settings (``enable_auto_ingestion``,
        ``ingestion_interval_hours``).
    startup_delay_seconds:
        Pause before the first run so the app finishes starting.
    """

    def __init__(
        self,
        pipeline: SchemeIngestionPipeline,
        settings: object,
        *,
        startup_delay_seconds: float = _STARTUP_DELAY_SECONDS,
    ) -> None:
        self._pipeline = pipeline
        self._settings = settings
        self._startup_delay = startup_delay_seconds
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False
        self._last_run: datetime | None = None
        self._last_trigger: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the background loop is active."""
        return self._running

    @property
    def last_run(self) -> datetime | None:
        return self._last_run

    @property
    def last_trigger(self) -> str | None:
        """What started the last run: ``schedule``, ``manual`` or ``source:<key>``."""
        return self._last_trigger

    @property
    def interval_seconds(self) -> float:
        return float(getattr(self._settings, "ingestion_interval_hours", 6)) * 3600

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch the background loop unless auto ingestion is disabled."""
        if not getattr(self._settings, "enable_auto_ingestion", True):
            logger.info("scheduler.auto_ingestion_disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start_background_scheduler())

    async def start_background_scheduler(self) -> None:
        """Run the pipeline every interval until cancelled via :meth:`stop`."""
        self._running = True
        logger.info("scheduler.background_started", interval_s=self.interval_seconds)

        try:
            await asyncio.sleep(self._startup_delay)
            while self._running:
                await self._safe_run(trigger="schedule")
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("scheduler.background_cancelled")
        finally:
            self._running = False
            logger.info("scheduler.background_stopped")

    async def _safe_run(self, trigger: str, source_key: str | None = None) -> IngestionResult | None:
        """Execute one run, logging rather than raising on failure."""
        try:
            if source_key is None:
                result = await self._pipeline.run_full_ingestion()
            else:
                result = await self._pipeline.run_source(source_key)
        except Exception:
            logger.error("scheduler.run_failed", trigger=trigger, exc_info=True)
            return None

        self._last_run = datetime.now(UTC)
        self._last_trigger = trigger
        logger.info(
            "scheduler.run_complete",
            trigger=trigger,
            new=result.new_schemes,
            updated=result.updated_schemes,
            failed_sources=result.failed_sources,
            duration_s=round(result.duration_seconds, 2),
        )
        return result

    # ------------------------------------------------------------------
    # On-demand execution
    # ------------------------------------------------------------------

    async def run_scheduled_update(self) -> IngestionResult | None:
        """Entry point for externally scheduled full runs."""
        logger.info("scheduler.manual_trigger")
        return await self._safe_run(trigger="manual")

    async def run_source_update(self, source_key: str) -> IngestionResult | None:
        """Ingest one source in response to a change notification from it."""
        logger.info("scheduler.source_change_trigger", source=source_key)
        return await self._safe_run(trigger=f"source:{source_key}", source_key=source_key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        logger.info("scheduler.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(self._task, timeout=10.0)
            self._task = None

        logger.info("scheduler.stopped")
