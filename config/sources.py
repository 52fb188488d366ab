"""Bundled registry of child-welfare scheme sources polled by the pipeline.

Each entry names the parser that understands the source's structure.
Deployments can replace this list with a JSON file via
``SCHEMEWATCH_SOURCES_PATH`` (see :mod:`src.services.ingestion.registry`).
"""

from __future__ import annotations

from typing import Final

from src.models.enums import GovernmentLevel, ParserKind
from src.models.source import SourceDescriptor

__all__ = ["DEFAULT_SOURCES"]


DEFAULT_SOURCES: Final[tuple[SourceDescriptor, ...]] = (
    # ── Central ministries ────────────────────────────────────────────
    SourceDescriptor(
        key="wcd_schemes",
        url="https://wcd.gov.in/schemes/feed.json",
        parser=ParserKind.JSON_FEED,
        government_level=GovernmentLevel.CENTRAL,
    ),
    SourceDescriptor(
        key="wcd_press_releases",
        url="https://wcd.gov.in/rss/schemes.xml",
        parser=ParserKind.RSS,
        government_level=GovernmentLevel.CENTRAL,
    ),
    SourceDescriptor(
        key="nhm_child_health",
        url="https://nhm.gov.in/index1.php?lang=1&level=2&sublinkid=819",
        parser=ParserKind.HTML_PAGE,
        government_level=GovernmentLevel.CENTRAL,
    ),
    # ── MyScheme catalogue pages (Next.js) ─────────────────────────────
    SourceDescriptor(
        key="myscheme_sukanya_samriddhi",
        url="https://www.myscheme.gov.in/schemes/ssy",
        parser=ParserKind.NEXT_DATA,
        government_level=GovernmentLevel.CENTRAL,
    ),
    SourceDescriptor(
        key="myscheme_pm_cares_children",
        url="https://www.myscheme.gov.in/schemes/pmcares",
        parser=ParserKind.NEXT_DATA,
        government_level=GovernmentLevel.CENTRAL,
    ),
    # ── State portals ──────────────────────────────────────────────────
    SourceDescriptor(
        key="icds_state_feed",
        url="https://icds-wcd.nic.in/schemes.json",
        parser=ParserKind.JSON_FEED,
        government_level=GovernmentLevel.STATE,
    ),
)
