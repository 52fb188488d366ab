from __future__ import annotations

from enum import StrEnum


class Gender(StrEnum):
    __slots__ = ()

    MALE = "male"
    FEMALE = "female"
    ALL = "all"


class GovernmentLevel(StrEnum):
    __slots__ = ()

    CENTRAL = "central"
    STATE = "state"
    DISTRICT = "district"
    LOCAL = "local"


class ParserKind(StrEnum):
    """Tag carried by every source descriptor; the normalizer dispatches on it."""

    __slots__ = ()

    JSON_FEED = "json_feed"
    RSS = "rss"
    HTML_PAGE = "html_page"
    NEXT_DATA = "next_data"  # Next.js pages embedding __NEXT_DATA__ (MyScheme)


class ChangeKind(StrEnum):
    __slots__ = ()

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class EventType(StrEnum):
    __slots__ = ()

    SCHEME_CREATED = "new_scheme"
    SCHEME_UPDATED = "scheme_updated"


class SyncState(StrEnum):
    __slots__ = ()

    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"
