from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from src.models.enums import EventType


class ChangeEvent(BaseModel):
    """A detected scheme change.  Carries the id only; clients fetch content on demand."""

    type: EventType
    scheme_id: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, str]:
        """Wire payload handed to the push transport."""
        return {"type": self.type.value, "scheme_id": self.scheme_id}

    @classmethod
    def created(cls, scheme_id: str) -> ChangeEvent:
        return cls(type=EventType.SCHEME_CREATED, scheme_id=scheme_id)

    @classmethod
    def updated(cls, scheme_id: str) -> ChangeEvent:
        return cls(type=EventType.SCHEME_UPDATED, scheme_id=scheme_id)
