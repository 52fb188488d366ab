from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator

from src.models.enums import Gender, GovernmentLevel

# Fields that define a scheme's content.  The fingerprint is computed over
# exactly these, so bookkeeping fields never register as a change.
CANONICAL_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "full_text",
    "source_url",
    "age_min",
    "age_max",
    "gender",
    "government_level",
)


class SchemeDraft(BaseModel):
    """A normalised scheme as produced by a parser, before identity is assigned."""

    title: str = Field(min_length=1)
    description: str = ""
    full_text: str | None = None
    source_url: str = Field(min_length=1)
    age_min: int | None = Field(default=None, ge=0)
    age_max: int | None = Field(default=None, ge=0)
    gender: Gender = Gender.ALL
    government_level: GovernmentLevel | None = None

    @model_validator(mode="after")
    def _check_age_bounds(self) -> SchemeDraft:
        if self.age_min is not None and self.age_max is not None and self.age_min > self.age_max:
            raise ValueError(f"age_min ({self.age_min}) exceeds age_max ({self.age_max})")
        return self

    def canonical_fields(self) -> dict[str, object]:
        return {name: _plain(getattr(self, name)) for name in CANONICAL_FIELDS}


class SchemeRecord(SchemeDraft):
    """Canonical server-side representation of a scheme."""

    id: str
    fingerprint: str
    last_updated: datetime
    first_seen: datetime = Field(default_factory=lambda: datetime.now(UTC))
    revision: int = 1
    sequence: int = 0
    source_key: str | None = None
    deleted: bool = False

    def matches(self, age: int | None = None, gender: Gender | str | None = None) -> bool:
        """Return True if the scheme applies to a child of *age* and *gender*.

        Absent age bounds are unbounded; ``Gender.ALL`` on either side
        matches any gender.
        """
        return applies_to(self.age_min, self.age_max, self.gender, age, gender)


class DeltaBatch(BaseModel):
    """Records changed since a cursor, ordered by store sequence."""

    schemes: list[SchemeRecord] = Field(default_factory=list)
    cursor: int = 0
    has_more: bool = False
    reset: bool = False  # cursor was ahead of the store; page starts from 0


def _plain(value: object) -> object:
    # StrEnum members serialise as their value; keep the hash input plain.
    if isinstance(value, Gender | GovernmentLevel):
        return value.value
    return value


def applies_to(
    age_min: int | None,
    age_max: int | None,
    scheme_gender: Gender,
    age: int | None,
    gender: Gender | str | None,
) -> bool:
    """Age/gender filter shared by canonical records and cached projections."""
    if age is not None:
        if age_min is not None and age < age_min:
            return False
        if age_max is not None and age > age_max:
            return False
    if gender is None or gender == Gender.ALL or scheme_gender == Gender.ALL:
        return True
    return scheme_gender == gender
