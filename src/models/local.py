"""Device-side data models for the sync client.

The local cache is a projection of the canonical store: it can be rebuilt
at any time from store data plus the locally retained favourites.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from src.models.enums import Gender, GovernmentLevel
from src.models.scheme import SchemeRecord, applies_to


class CachedScheme(BaseModel):
    """Local copy of a canonical record as last seen by the device."""

    model_config = {"frozen": True}

    id: str
    title: str
    description: str = ""
    full_text: str | None = None
    source_url: str
    age_min: int | None = None
    age_max: int | None = None
    gender: Gender = Gender.ALL
    government_level: GovernmentLevel | None = None
    fingerprint: str
    last_updated: datetime
    sequence: int = 0
    synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_record(cls, record: SchemeRecord, synced_at: datetime | None = None) -> CachedScheme:
        return cls(
            id=record.id,
            title=record.title,
            description=record.description,
            full_text=record.full_text,
            source_url=record.source_url,
            age_min=record.age_min,
            age_max=record.age_max,
            gender=record.gender,
            government_level=record.government_level,
            fingerprint=record.fingerprint,
            last_updated=record.last_updated,
            sequence=record.sequence,
            synced_at=synced_at or datetime.now(UTC),
        )

    def matches(self, age: int | None = None, gender: Gender | str | None = None) -> bool:
        return applies_to(self.age_min, self.age_max, self.gender, age, gender)


class FavoriteAnnotation(BaseModel):
    """A user's saved scheme.  Owned by the device, independent of the record."""

    model_config = {"frozen": True}

    scheme_id: str
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    orphaned: bool = False  # canonical record was retired server-side


class LocalState(BaseModel):
    """Everything the device persists between runs."""

    model_config = {"frozen": True}

    cursor: int = 0
    schemes: dict[str, CachedScheme] = Field(default_factory=dict)
    favorites: dict[str, FavoriteAnnotation] = Field(default_factory=dict)
    last_synced_at: datetime | None = None
    last_error: str | None = None
