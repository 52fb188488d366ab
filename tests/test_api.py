"""Tests for the HTTP API: delta feed, scheme detail, admin endpoints, health."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from src.main import create_app
from src.models.enums import ParserKind
from src.models.source import SourceDescriptor
from src.services.cache import CacheManager
from src.services.ingestion.change_detector import ChangeDetector, scheme_id_for
from src.services.ingestion.fetcher import FetchedContent
from src.services.ingestion.pipeline import SchemeIngestionPipeline
from src.services.ingestion.registry import SourceRegistry
from src.services.notifications import ChangeNotifier, InMemoryPushTransport
from src.services.store import SchemeStore

ADMIN_KEY = "test-admin-key"
FEED_URL = "https://wcd.gov.example/feed.json"
FEED = (
    '[{"title": "Poshan", "url": "https://wcd.gov.example/poshan"},'
    ' {"title": "ICDS", "url": "https://wcd.gov.example/icds"},'
    ' {"title": "Vatsalya", "url": "https://wcd.gov.example/vatsalya"}]'
)


class FakeFetcher:
    """Serves a fixed body for every source."""

    def __init__(self, text: str):
        self.text = text
        self.calls: list[str] = []

    async def fetch(self, source, *, conditional=True):
        self.calls.append(source.key)
        return FetchedContent(url=source.url, text=self.text)

    async def remember_validators(self, source, content):
        pass

    async def close(self):
        pass


@pytest.fixture
def services():
    store = SchemeStore()
    transport = InMemoryPushTransport()
    notifier = ChangeNotifier(transport, backoff_seconds=0)
    registry = SourceRegistry([SourceDescriptor(key="wcd", url=FEED_URL, parser=ParserKind.JSON_FEED)])
    fetcher = FakeFetcher(FEED)
    pipeline = SchemeIngestionPipeline(registry, fetcher, ChangeDetector(store, notifier), store)
    return {
        "store": store,
        "transport": transport,
        "notifier": notifier,
        "fetcher": fetcher,
        "pipeline": pipeline,
    }


@pytest.fixture
def app(services):
    application = create_app(Settings(ADMIN_API_KEY=ADMIN_KEY, enable_auto_ingestion=False))
    # Lifespan is not run; wire the services directly.
    application.state.cache = CacheManager()
    application.state.store = services["store"]
    application.state.notifier = services["notifier"]
    application.state.ingestion_pipeline = services["pipeline"]
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin():
    return {"X-Admin-API-Key": ADMIN_KEY}


def _ingest(services) -> None:
    asyncio.run(services["pipeline"].run_full_ingestion())


class TestSchemesFeed:
    def test_empty_store(self, client):
        response = client.get("/api/v1/schemes")
        assert response.status_code == 200
        assert response.json() == {"schemes": [], "cursor": 0, "has_more": False, "reset": False}

    def test_paging_through_deltas(self, client, services):
        _ingest(services)

        first = client.get("/api/v1/schemes", params={"since": 0, "limit": 2}).json()
        assert [s["title"] for s in first["schemes"]] == ["Poshan", "ICDS"]
        assert first["has_more"] is True

        second = client.get("/api/v1/schemes", params={"since": first["cursor"], "limit": 2}).json()
        assert [s["title"] for s in second["schemes"]] == ["Vatsalya"]
        assert second["has_more"] is False

        third = client.get("/api/v1/schemes", params={"since": second["cursor"]}).json()
        assert third["schemes"] == []
        assert third["cursor"] == second["cursor"]

    @pytest.mark.parametrize("params", [{"since": -1}, {"limit": 0}, {"limit": 501}])
    def test_invalid_query_rejected(self, client, params):
        assert client.get("/api/v1/schemes", params=params).status_code == 422

    def test_store_missing_is_503(self, app, client):
        app.state.store = None
        assert client.get("/api/v1/schemes").status_code == 503


class TestSchemeDetail:
    def test_found(self, client, services):
        _ingest(services)
        scheme_id = scheme_id_for("https://wcd.gov.example/poshan")
        response = client.get(f"/api/v1/schemes/{scheme_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == scheme_id
        assert body["fingerprint"]
        assert body["deleted"] is False

    def test_not_found(self, client):
        assert client.get("/api/v1/schemes/does-not-exist").status_code == 404


class TestAdminAuth:
    def test_missing_key(self, client):
        assert client.post("/api/v1/admin/ingest").status_code == 401

    def test_wrong_key(self, client):
        response = client.post("/api/v1/admin/ingest", headers={"X-Admin-API-Key": "nope"})
        assert response.status_code == 403


class TestAdminIngestion:
    def test_full_ingestion(self, client, admin, services):
        response = client.post("/api/v1/admin/ingest", headers=admin)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["result"]["new_schemes"] == 3
        assert services["store"].count() == 3

    def test_single_source(self, client, admin):
        response = client.post("/api/v1/admin/ingest/sources/wcd", headers=admin)
        assert response.status_code == 200
        assert response.json()["result"]["sources"][0]["source_key"] == "wcd"

    def test_single_unknown_source(self, client, admin):
        assert client.post("/api/v1/admin/ingest/sources/nope", headers=admin).status_code == 404

    def test_source_change_by_key_runs_in_background(self, client, admin, services):
        response = client.post("/api/v1/admin/ingest/source-change", json={"source_key": "wcd"}, headers=admin)
        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "source_key": "wcd"}
        assert services["fetcher"].calls == ["wcd"]
        assert services["store"].count() == 3

    def test_source_change_by_url(self, client, admin):
        response = client.post(
            "/api/v1/admin/ingest/source-change",
            json={"url": "https://WCD.gov.example/feed.json/"},
            headers=admin,
        )
        assert response.status_code == 202
        assert response.json()["source_key"] == "wcd"

    def test_source_change_unknown(self, client, admin):
        response = client.post(
            "/api/v1/admin/ingest/source-change", json={"url": "https://elsewhere.example"}, headers=admin
        )
        assert response.status_code == 404

    def test_source_change_requires_identifier(self, client, admin):
        response = client.post("/api/v1/admin/ingest/source-change", json={}, headers=admin)
        assert response.status_code == 422

    def test_status(self, client, admin):
        client.post("/api/v1/admin/ingest", headers=admin)
        body = client.get("/api/v1/admin/ingest/status", headers=admin).json()
        assert body["status"] == "ready"
        assert body["schemes"] == 3
        assert body["sources"] == 1
        assert body["last_result"]["new_schemes"] == 3
        assert body["notifications"] == {"published": 3, "failed": 0}


class TestRetire:
    def test_retire_emits_tombstone_and_trigger(self, client, admin, services):
        _ingest(services)
        queue = services["transport"].subscribe("phone")
        scheme_id = scheme_id_for("https://wcd.gov.example/icds")

        response = client.delete(f"/api/v1/admin/schemes/{scheme_id}", headers=admin)
        assert response.status_code == 200
        assert response.json()["sequence"] == 4

        assert client.get(f"/api/v1/schemes/{scheme_id}").status_code == 404
        delta = client.get("/api/v1/schemes", params={"since": 3}).json()
        assert delta["schemes"][0]["id"] == scheme_id
        assert delta["schemes"][0]["deleted"] is True
        assert queue.get_nowait() == {"type": "scheme_updated", "scheme_id": scheme_id}

    def test_retire_unknown(self, client, admin):
        assert client.delete("/api/v1/admin/schemes/ghost", headers=admin).status_code == 404


class TestHealth:
    def test_liveness(self, client):
        body = client.get("/api/v1/health").json()
        assert body["status"] == "healthy"
        assert body["version"] == "0.1.0"

    def test_readiness(self, client):
        body = client.get("/api/v1/health/ready").json()
        assert body["status"] == "ready"
        assert body["checks"]["cache"] == "ok (in-memory)"
        assert body["checks"]["notifier"] == "ok (topic new_schemes)"
        assert body["store_sequence"] == 0

    def test_readiness_degraded_without_store(self, app, client):
        app.state.store = None
        assert client.get("/api/v1/health/ready").json()["status"] == "degraded"

    def test_api_info(self, client):
        body = client.get("/api").json()
        assert body["notification_topic"] == "new_schemes"
