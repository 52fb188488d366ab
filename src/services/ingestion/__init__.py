"""Change-detection ingestion pipeline for child-welfare schemes.

Polls the registered government sources, normalises what they publish
into canonical scheme records, and announces new or changed schemes.

Public API::

    from src.services.ingestion import (
        SourceRegistry,
        SourceFetcher,
        ChangeDetector,
        SchemeIngestionPipeline,
        IngestionScheduler,
    )
"""

from __future__ import annotations

from src.services.ingestion.change_detector import ChangeDetector, compute_fingerprint, scheme_id_for
from src.services.ingestion.fetcher import FetchedContent, SourceFetcher
from src.services.ingestion.normalizer import normalize
from src.services.ingestion.pipeline import IngestionResult, SchemeIngestionPipeline, SourceReport
from src.services.ingestion.registry import SourceRegistry
from src.services.ingestion.scheduler import IngestionScheduler

__all__ = [
    "ChangeDetector",
    "FetchedContent",
    "IngestionResult",
    "IngestionScheduler",
    "SchemeIngestionPipeline",
    "SourceFetcher",
    "SourceRegistry",
    "SourceReport",
    "compute_fingerprint",
    "normalize",
    "scheme_id_for",
]
