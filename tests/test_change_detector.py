"""Tests for scheme identity, fingerprinting and change classification."""

from __future__ import annotations

import asyncio
from uuid import NAMESPACE_URL, uuid5

import pytest

from src.models.enums import ChangeKind, Gender, GovernmentLevel
from src.models.scheme import SchemeDraft
from src.services.errors import StoreConflictError
from src.services.ingestion.change_detector import (
    ChangeDetector,
    canonical_url,
    compute_fingerprint,
    scheme_id_for,
)
from src.services.notifications import ChangeNotifier, InMemoryPushTransport
from src.services.store import SchemeStore


def _draft(**overrides) -> SchemeDraft:
    data = {"title": "T1", "source_url": "gov/a", "age_min": 0, "age_max": 5, "gender": Gender.ALL}
    data.update(overrides)
    return SchemeDraft(**data)


class RecordingTransport:
    """Push transport that remembers every payload."""

    def __init__(self, *, fail: bool = False):
        self.published: list[tuple[str, dict]] = []
        self.fail = fail

    async def publish(self, topic: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("push gateway down")
        self.published.append((topic, payload))

    async def close(self) -> None:
        pass


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store():
    return SchemeStore()


@pytest.fixture
def detector(store, transport):
    return ChangeDetector(store, ChangeNotifier(transport, backoff_seconds=0))


# ---------------------------------------------------------------------------
# Identity and fingerprint
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_same_url_same_id(self):
        assert scheme_id_for("https://gov.example/a") == scheme_id_for("https://gov.example/a")

    def test_id_ignores_host_case_and_trailing_slash(self):
        assert scheme_id_for("https://GOV.example/a/") == scheme_id_for("https://gov.example/a")

    def test_fragment_distinguishes_schemes_on_one_page(self):
        assert scheme_id_for("https://gov.example/list#a") != scheme_id_for("https://gov.example/list#b")

    def test_id_is_uuid5_of_canonical_url(self):
        assert scheme_id_for("HTTPS://Gov.example/a/") == str(uuid5(NAMESPACE_URL, "https://gov.example/a"))

    def test_canonical_url_keeps_query(self):
        assert canonical_url("HTTPS://Gov.Example/path/?id=3") == "https://gov.example/path?id=3"


class TestFingerprint:
    def test_deterministic(self):
        assert compute_fingerprint(_draft()) == compute_fingerprint(_draft())

    def test_changes_with_content(self):
        assert compute_fingerprint(_draft()) != compute_fingerprint(_draft(title="T1-revised"))

    def test_changes_with_eligibility(self):
        assert compute_fingerprint(_draft()) != compute_fingerprint(_draft(age_max=6))
        assert compute_fingerprint(_draft()) != compute_fingerprint(_draft(gender=Gender.FEMALE))
        assert compute_fingerprint(_draft()) != compute_fingerprint(
            _draft(government_level=GovernmentLevel.STATE)
        )

    def test_cosmetic_url_difference_does_not_change_fingerprint(self):
        assert compute_fingerprint(_draft(source_url="https://gov.example/a/")) == compute_fingerprint(
            _draft(source_url="https://GOV.example/a")
        )

    def test_hex_sha256(self):
        fingerprint = compute_fingerprint(_draft())
        assert len(fingerprint) == 64
        int(fingerprint, 16)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestChangeDetector:
    @pytest.mark.asyncio
    async def test_three_ingestion_scenario(self, detector, store, transport):
        first = await detector.process(_draft())
        assert first.kind is ChangeKind.NEW
        assert first.record.id == scheme_id_for("gov/a")
        f1 = first.record.fingerprint
        assert transport.published == [("new_schemes", {"type": "new_scheme", "scheme_id": first.record.id})]

        second = await detector.process(_draft())
        assert second.kind is ChangeKind.UNCHANGED
        assert second.event is None
        assert second.record.fingerprint == f1
        assert len(transport.published) == 1

        third = await detector.process(_draft(title="T1-revised"))
        assert third.kind is ChangeKind.UPDATED
        assert third.record.fingerprint != f1
        assert third.record.last_updated >= first.record.last_updated
        assert transport.published[-1] == (
            "new_schemes",
            {"type": "scheme_updated", "scheme_id": first.record.id},
        )
        assert len(transport.published) == 2
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_unchanged_writes_nothing(self, detector, store):
        await detector.process(_draft())
        sequence = store.sequence
        await detector.process(_draft())
        assert store.sequence == sequence

    @pytest.mark.asyncio
    async def test_update_keeps_first_seen(self, detector):
        first = await detector.process(_draft())
        updated = await detector.process(_draft(description="new text"))
        assert updated.record.first_seen == first.record.first_seen
        assert updated.record.revision == 2

    @pytest.mark.asyncio
    async def test_retired_scheme_reappearing_is_new(self, detector, store):
        first = await detector.process(_draft())
        await store.retire(first.record.id)
        again = await detector.process(_draft())
        assert again.kind is ChangeKind.NEW
        assert again.record.deleted is False

    @pytest.mark.asyncio
    async def test_notify_failure_does_not_fail_detection(self, store):
        detector = ChangeDetector(
            store,
            ChangeNotifier(RecordingTransport(fail=True), max_attempts=2, backoff_seconds=0),
        )
        outcome = await detector.process(_draft())
        assert outcome.kind is ChangeKind.NEW
        assert outcome.notified is False
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_without_notifier(self, store):
        outcome = await ChangeDetector(store).process(_draft())
        assert outcome.kind is ChangeKind.NEW
        assert outcome.notified is None

    @pytest.mark.asyncio
    async def test_concurrent_identical_drafts_create_one_record(self, detector, store, transport):
        outcomes = await asyncio.gather(*(detector.process(_draft()) for _ in range(5)))
        kinds = sorted(o.kind.value for o in outcomes)
        assert kinds.count("new") == 1
        assert kinds.count("unchanged") == 4
        assert store.count() == 1
        assert len(transport.published) == 1

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, store):
        class FlakyStore(SchemeStore):
            def __init__(self):
                super().__init__()
                self.failures = 1

            async def upsert(self, record, *, expected_revision=None):
                if self.failures:
                    self.failures -= 1
                    raise StoreConflictError(record.id, expected_revision, 99)
                return await super().upsert(record, expected_revision=expected_revision)

        flaky = FlakyStore()
        outcome = await ChangeDetector(flaky).process(_draft())
        assert outcome.kind is ChangeKind.NEW
        assert flaky.count() == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self):
        class AlwaysConflicting(SchemeStore):
            async def upsert(self, record, *, expected_revision=None):
                raise StoreConflictError(record.id, expected_revision, 99)

        with pytest.raises(StoreConflictError):
            await ChangeDetector(AlwaysConflicting(), max_attempts=2).process(_draft())

    @pytest.mark.asyncio
    async def test_in_memory_transport_delivers_to_device(self, store):
        transport = InMemoryPushTransport()
        queue = transport.subscribe("device-1")
        detector = ChangeDetector(store, ChangeNotifier(transport))
        outcome = await detector.process(_draft())
        assert queue.get_nowait() == {"type": "new_scheme", "scheme_id": outcome.record.id}

    @pytest.mark.asyncio
    async def test_same_url_from_another_source_does_not_overwrite(self, detector, store, transport):
        first = await detector.process(_draft(), source_key="wcd")
        other = await detector.process(_draft(title="Listing copy"), source_key="portal")

        assert other.kind is ChangeKind.UNCHANGED
        assert other.source_conflict is True
        assert other.event is None
        stored = await store.get(first.record.id)
        assert stored.title == "T1"
        assert stored.source_key == "wcd"
        assert len(transport.published) == 1

        # The owning source can still update its record.
        owned = await detector.process(_draft(title="T1-revised"), source_key="wcd")
        assert owned.kind is ChangeKind.UPDATED

    @pytest.mark.asyncio
    async def test_retired_record_can_be_claimed_by_another_source(self, detector, store):
        first = await detector.process(_draft(), source_key="wcd")
        await store.retire(first.record.id)
        claimed = await detector.process(_draft(), source_key="portal")
        assert claimed.kind is ChangeKind.NEW
        assert claimed.record.source_key == "portal"
