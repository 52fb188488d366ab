"""Tests for the scheme, event and local-state models."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from src.models.enums import EventType, Gender, GovernmentLevel
from src.models.events import ChangeEvent
from src.models.local import CachedScheme, FavoriteAnnotation, LocalState
from src.models.scheme import CANONICAL_FIELDS, DeltaBatch, SchemeDraft, SchemeRecord


def _record(**overrides) -> SchemeRecord:
    data = {
        "id": "s-1",
        "title": "Sukanya Samriddhi Yojana",
        "description": "Savings scheme for the girl child",
        "source_url": "https://gov.example/ssy",
        "age_min": 0,
        "age_max": 10,
        "gender": Gender.FEMALE,
        "fingerprint": "abc",
        "last_updated": datetime(2024, 1, 1, tzinfo=UTC),
    }
    data.update(overrides)
    return SchemeRecord(**data)


class TestSchemeDraft:
    def test_minimal_draft(self):
        draft = SchemeDraft(title="Poshan", source_url="https://gov.example/poshan")
        assert draft.description == ""
        assert draft.full_text is None
        assert draft.gender == Gender.ALL
        assert draft.government_level is None

    def test_empty_title_rejected(self):
        with pytest.raises(ValidationError):
            SchemeDraft(title="", source_url="https://gov.example/x")

    def test_negative_age_rejected(self):
        with pytest.raises(ValidationError):
            SchemeDraft(title="X", source_url="https://gov.example/x", age_min=-1)

    def test_inverted_age_bounds_rejected(self):
        with pytest.raises(ValidationError, match="exceeds"):
            SchemeDraft(title="X", source_url="https://gov.example/x", age_min=10, age_max=5)

    def test_canonical_fields_are_plain(self):
        draft = SchemeDraft(
            title="X",
            source_url="https://gov.example/x",
            gender=Gender.MALE,
            government_level=GovernmentLevel.STATE,
        )
        fields = draft.canonical_fields()
        assert tuple(fields) == CANONICAL_FIELDS
        assert fields["gender"] == "male"
        assert fields["government_level"] == "state"
        assert type(fields["gender"]) is str


class TestSchemeRecordMatching:
    def test_age_inside_bounds(self):
        assert _record().matches(age=5)

    def test_age_outside_bounds(self):
        assert not _record().matches(age=11)
        assert not _record(age_min=3).matches(age=2)

    def test_unbounded_ages_match_everything(self):
        record = _record(age_min=None, age_max=None)
        assert record.matches(age=0)
        assert record.matches(age=17)

    def test_gender_filter(self):
        record = _record()
        assert record.matches(gender=Gender.FEMALE)
        assert record.matches(gender="female")
        assert not record.matches(gender=Gender.MALE)

    def test_all_gender_matches_any_child(self):
        record = _record(gender=Gender.ALL)
        assert record.matches(gender=Gender.MALE)
        assert _record().matches(gender=Gender.ALL)

    def test_no_filters_match(self):
        assert _record().matches()


class TestChangeEvent:
    def test_payload_is_id_only(self):
        event = ChangeEvent.created("abc")
        assert event.to_payload() == {"type": "new_scheme", "scheme_id": "abc"}

    def test_updated_event_type(self):
        event = ChangeEvent.updated("abc")
        assert event.type == EventType.SCHEME_UPDATED
        assert event.to_payload()["type"] == "scheme_updated"


class TestLocalModels:
    def test_cached_scheme_from_record(self):
        record = _record(sequence=7)
        synced = datetime(2024, 2, 1, tzinfo=UTC)
        cached = CachedScheme.from_record(record, synced)
        assert cached.id == record.id
        assert cached.fingerprint == record.fingerprint
        assert cached.sequence == 7
        assert cached.synced_at == synced
        assert cached.matches(age=4, gender=Gender.FEMALE)

    def test_local_state_defaults(self):
        state = LocalState()
        assert state.cursor == 0
        assert state.schemes == {}
        assert state.favorites == {}
        assert state.last_synced_at is None

    def test_local_state_is_frozen(self):
        state = LocalState()
        with pytest.raises(ValidationError):
            state.cursor = 5

    def test_favorite_defaults(self):
        fav = FavoriteAnnotation(scheme_id="s-1")
        assert fav.orphaned is False
        assert fav.saved_at.tzinfo is not None

    def test_delta_batch_defaults(self):
        batch = DeltaBatch()
        assert batch.schemes == []
        assert batch.cursor == 0
        assert batch.has_more is False
