from src.models.enums import (
    ChangeKind,
    EventType,
    Gender,
    GovernmentLevel,
    ParserKind,
    SyncState,
)
from src.models.events import ChangeEvent
from src.models.local import CachedScheme, FavoriteAnnotation, LocalState
from src.models.scheme import CANONICAL_FIELDS, DeltaBatch, SchemeDraft, SchemeRecord
from src.models.source import SourceDescriptor

__all__ = [
    "CANONICAL_FIELDS",
    "CachedScheme",
    "ChangeEvent",
    "ChangeKind",
    "DeltaBatch",
    "EventType",
    "FavoriteAnnotation",
    "Gender",
    "GovernmentLevel",
    "LocalState",
    "ParserKind",
    "SchemeDraft",
    "SchemeRecord",
    "SourceDescriptor",
    "SyncState",
]
