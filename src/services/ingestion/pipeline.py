"""Scheme ingestion pipeline -- polls every registered source for changes.

For each enabled source the pipeline runs one independent
fetch -> normalize -> detect sequence:

1. **Fetch** the raw content (conditional GET when the source has been
   ingested before; a ``304`` short-circuits the rest).  Validators for
   the next conditional GET are kept only after a clean run.
2. **Normalize** it with the parser named by the source descriptor.
3. **Detect** changes per draft; new and updated schemes are written to
   the canonical store and announced on the ``new_schemes`` topic.

Isolation
---------
A source that times out, answers with an error or serves malformed
content is recorded as failed in the run report; every other source is
still processed.  The only shared mutable state is the store, whose
per-id writes are serialised.

Idempotency
-----------
Running the pipeline twice over unchanged upstream data writes nothing and
publishes nothing on the second run: fingerprints are content-based.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from src.models.enums import ChangeKind
from src.services.errors import FetchError, ParseError, StoreConflictError
from src.services.ingestion.normalizer import normalize

if TYPE_CHECKING:
    from src.models.source import SourceDescriptor
    from src.services.cache import CacheManager
    from src.services.ingestion.change_detector import ChangeDetector
    from src.services.ingestion.fetcher import SourceFetcher
    from src.services.ingestion.registry import SourceRegistry
    from src.services.store import SchemeStore

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_LAST_RESULT_KEY = "ingestion:last_result"
_LAST_RESULT_TTL = 7 * 24 * 60 * 60  # 7 days


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class SourceReport:
    """Outcome of ingesting one source.  ``status`` is ok, not_modified or failed."""

    source_key: str
    status: str = "ok"
    drafts: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    rejected: int = 0
    conflicts: int = 0
    error: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "source_key": self.source_key,
            "status": self.status,
            "drafts": self.drafts,
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "rejected": self.rejected,
            "conflicts": self.conflicts,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class IngestionResult:
    """Report produced by an ingestion run."""

    sources: list[SourceReport] = field(default_factory=list)
    new_schemes: int = 0
    updated_schemes: int = 0
    unchanged_schemes: int = 0
    failed_sources: int = 0
    events_published: int = 0
    notify_failures: int = 0
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    errors: list[str] = field(default_factory=list)

    @property
    def changes_detected(self) -> int:
        return self.new_schemes + self.updated_schemes

    def add(self, report: SourceReport) -> None:
        self.sources.append(report)
        self.new_schemes += report.new
        self.updated_schemes += report.updated
        self.unchanged_schemes += report.unchanged
        if report.status == "failed":
            self.failed_sources += 1
            self.errors.append(f"{report.source_key}: {report.error}")

    def to_dict(self) -> dict:
        """Serialise to a JSON-compatible dictionary."""
        return {
            "new_schemes": self.new_schemes,
            "updated_schemes": self.updated_schemes,
            "unchanged_schemes": self.unchanged_schemes,
            "changes_detected": self.changes_detected,
            "failed_sources": self.failed_sources,
            "events_published": self.events_published,
            "notify_failures": self.notify_failures,
            "duration_seconds": round(self.duration_seconds, 2),
            "timestamp": self.timestamp.isoformat(),
            "errors": self.errors,
            "sources": [r.to_dict() for r in self.sources],
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SchemeIngestionPipeline:
    """Runs fetch, normalize and change detection over the source registry.

    Parameters
    ----------
    registry:
        Sources to poll.
    fetcher:
        HTTP fetcher with timeout and retry.
    detector:
        Change detector writing to the canonical store.
    store:
        Canonical store; its snapshot is saved after each run.
    cache:
        Optional cache used to publish the last run report.
    max_concurrency:
        Number of sources processed in parallel.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        fetcher: SourceFetcher,
        detector: ChangeDetector,
        store: SchemeStore,
        cache: CacheManager | None = None,
        *,
        max_concurrency: int = 4,
    ) -> None:
        self._registry = registry
        self._fetcher = fetcher
        self._detector = detector
        self._store = store
        self._cache = cache
        self._max_concurrency = max_concurrency
        self._run_lock = asyncio.Lock()
        self._last_result: IngestionResult | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def last_result(self) -> IngestionResult | None:
        """The result of the most recent ingestion run."""
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def registry(self) -> SourceRegistry:
        return self._registry

    async def run_full_ingestion(self) -> IngestionResult:
        """Ingest every enabled source with bounded parallelism.

        Overlapping calls are serialised.  Never raises for a single
        source's failure; see :attr:`SourceReport.status`.
        """
        async with self._run_lock:
            sources = self._registry.enabled()
            logger.info("ingestion.full_run_start", sources=len(sources))
            return await self._run(sources)

    async def run_source(self, key: str) -> IngestionResult:
        """Ingest the single source registered under *key*.

        Raises
        ------
        UnknownSourceError
            If no source has that key.
        """
        source = self._registry.get(key)
        async with self._run_lock:
            logger.info("ingestion.source_run_start", source=key)
            return await self._run([source])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, sources: list[SourceDescriptor]) -> IngestionResult:
        start = time.monotonic()
        result = IngestionResult()
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(source: SourceDescriptor) -> tuple[SourceReport, int, int]:
            async with semaphore:
                return await self._ingest_source(source)

        for report, published, notify_failed in await asyncio.gather(*(_bounded(s) for s in sources)):
            result.add(report)
            result.events_published += published
            result.notify_failures += notify_failed

        try:
            await self._store.save()
        except OSError as exc:
            result.errors.append(f"store snapshot: {exc}")
            logger.error("ingestion.store_save_failed", error=str(exc))

        result.duration_seconds = time.monotonic() - start
        self._last_result = result

        logger.info(
            "ingestion.run_complete",
            sources=len(sources),
            new=result.new_schemes,
            updated=result.updated_schemes,
            unchanged=result.unchanged_schemes,
            failed_sources=result.failed_sources,
            published=result.events_published,
            duration_s=round(result.duration_seconds, 2),
        )

        if self._cache is not None:
            await self._cache.set(_LAST_RESULT_KEY, result.to_dict(), ttl_seconds=_LAST_RESULT_TTL)
        return result

    async def _ingest_source(self, source: SourceDescriptor) -> tuple[SourceReport, int, int]:
        start = time.monotonic()
        report = SourceReport(source_key=source.key)
        published = notify_failed = 0

        try:
            content = await self._fetcher.fetch(source, conditional=self._has_records_from(source.key))
            if content.not_modified:
                report.status = "not_modified"
                logger.info("ingestion.source_not_modified", source=source.key)
                return report, 0, 0

            drafts = normalize(content.text, source)
            report.drafts = len(drafts)

            for draft in drafts:
                try:
                    outcome = await self._detector.process(draft, source_key=source.key)
                except StoreConflictError as exc:
                    report.rejected += 1
                    logger.error("ingestion.store_conflict", source=source.key, scheme_id=exc.scheme_id)
                    continue

                if outcome.source_conflict:
                    report.conflicts += 1
                if outcome.kind is ChangeKind.NEW:
                    report.new += 1
                elif outcome.kind is ChangeKind.UPDATED:
                    report.updated += 1
                else:
                    report.unchanged += 1
                if outcome.notified is True:
                    published += 1
                elif outcome.notified is False:
                    notify_failed += 1

            if report.rejected == 0:
                await self._fetcher.remember_validators(source, content)

        except (FetchError, ParseError) as exc:
            report.status = "failed"
            report.error = str(exc)
            logger.error(
                "ingestion.source_failed",
                source=source.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        except Exception as exc:
            report.status = "failed"
            report.error = f"unexpected error: {exc}"
            logger.exception("ingestion.source_crashed", source=source.key)
        finally:
            report.duration_seconds = time.monotonic() - start

        if report.status == "ok":
            logger.info(
                "ingestion.source_complete",
                source=source.key,
                drafts=report.drafts,
                new=report.new,
                updated=report.updated,
                unchanged=report.unchanged,
            )
        return report, published, notify_failed

    def _has_records_from(self, source_key: str) -> bool:
        # A conditional GET is only safe if the store already holds this source.
        return any(r.source_key == source_key for r in self._store.all(include_deleted=True))
