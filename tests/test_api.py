"""Tests for the FastAPI routes."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from untap.api.server import create_app
from untap.health.engine import CheckResult, utcnow
from untap.health.incidents import IncidentEvaluator
from untap.health.scheduler import HealthScheduler
from untap.health.store import StoreUnavailableError
from untap.services.registry import ServiceRegistry

from conftest import add_results, make_service


async def ok_probe(service, executor):
    return CheckResult(
        service_id=service.id, check_type=service.check_type, success=True,
        latency_ms=42, http_status=200,
    )


@pytest.fixture
def app(store, notifier, tmp_path):
    catalog = tmp_path / "services.yaml"
    catalog.write_text(
        "services:\n"
        "  - slug: github\n"
        "    display_name: GitHub\n"
        "    category: Developer\n"
        "    check_target: https://api.github.com/zen\n"
        "  - slug: stripe\n"
        "    display_name: Stripe\n"
        "    category: Payments\n"
        "    check_target: https://api.stripe.com/v1/charges\n"
        "    expected_status: 401\n",
        encoding="utf-8",
    )
    app = create_app()
    app.state.health_store = store
    app.state.registry = ServiceRegistry(catalog)
    app.state.notifier = notifier
    scheduler = HealthScheduler(store, IncidentEvaluator(store, notifier), probe=ok_probe)
    app.state.health_scheduler = scheduler
    yield app
    scheduler.close()


@pytest.fixture
def client(app):
    return TestClient(app)


class TestServiceRoutes:
    def test_list_services(self, client, store):
        now = utcnow()
        github = make_service(store, "github", display_name="GitHub")
        make_service(store, "stripe", display_name="Stripe", category="Payments")
        make_service(store, "retired", is_active=False)
        add_results(store, github.id, [False, True, False, True, True], start=now - timedelta(minutes=2))

        resp = client.get("/api/services")
        assert resp.status_code == 200
        data = {s["slug"]: s for s in resp.json()}
        assert set(data) == {"github", "stripe"}

        assert data["github"]["displayName"] == "GitHub"
        assert data["github"]["currentStatus"] == "degraded"
        assert data["github"]["failureRate"] == 40
        assert data["github"]["openIncident"] is None
        assert data["github"]["lastCheck"] is not None

        assert data["stripe"]["currentStatus"] == "ok"
        assert data["stripe"]["lastCheck"] is None
        assert data["stripe"]["latencyMs"] is None

    def test_open_incident_in_summary(self, client, store):
        service = make_service(store, "github")
        incident_id = store.create_incident(service.id, utcnow() - timedelta(minutes=3), 80, "x")

        resp = client.get("/api/services")
        summary = resp.json()[0]
        assert summary["openIncident"]["id"] == incident_id
        assert summary["openIncident"]["failureRate"] == 80

    def test_categories(self, client, store):
        make_service(store, "github", category="Developer")
        make_service(store, "stripe", category="Payments")
        resp = client.get("/api/services/categories")
        assert resp.json() == ["Developer", "Payments"]

    def test_service_detail(self, client, store):
        now = utcnow()
        service = make_service(store, "github", display_name="GitHub", is_critical=True)
        add_results(store, service.id, [True, False, True], start=now - timedelta(minutes=30), step_s=60)
        add_results(store, service.id, [True], start=now - timedelta(days=3))
        store.create_incident(service.id, now - timedelta(minutes=29), 60, "Service experiencing 60% failure rate")

        resp = client.get("/api/services/github", params={"window": "1h"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"]["displayName"] == "GitHub"
        assert data["service"]["isCritical"] is True
        assert data["window"] == "1h"
        assert [c["success"] for c in data["checks"]] == [True, False, True]
        times = [c["t"] for c in data["checks"]]
        assert times == sorted(times)
        assert data["checks"][1]["errorCode"] == "TIMEOUT"
        assert len(data["incidents"]) == 1
        assert data["incidents"][0]["status"] == "open"

    def test_service_detail_default_window(self, client, store):
        make_service(store, "github")
        resp = client.get("/api/services/github")
        assert resp.status_code == 200
        assert resp.json()["window"] == "24h"
        assert resp.json()["checks"] == []

    def test_unknown_service(self, client):
        resp = client.get("/api/services/nope")
        assert resp.status_code == 404

    def test_invalid_window(self, client, store):
        make_service(store, "github")
        resp = client.get("/api/services/github", params={"window": "2w"})
        assert resp.status_code == 422


class TestIncidentRoutes:
    def test_recent_and_open(self, client, store):
        a = make_service(store, "github", display_name="GitHub")
        b = make_service(store, "stripe", display_name="Stripe")
        now = utcnow()
        old = store.create_incident(a.id, now - timedelta(hours=2), 60, "old")
        store.resolve_incident(old, now - timedelta(hours=1))
        store.create_incident(b.id, now - timedelta(minutes=5), 80, "new")

        recent = client.get("/api/incidents/recent").json()
        assert [i["summary"] for i in recent] == ["new", "old"]
        assert recent[0]["serviceSlug"] == "stripe"
        assert recent[0]["serviceName"] == "Stripe"

        opened = client.get("/api/incidents/open").json()
        assert [i["serviceSlug"] for i in opened] == ["stripe"]

    def test_recent_limit_bounds(self, client):
        assert client.get("/api/incidents/recent", params={"limit": 0}).status_code == 422
        assert client.get("/api/incidents/recent", params={"limit": 51}).status_code == 422
        assert client.get("/api/incidents/recent", params={"limit": 5}).json() == []


class TestAdminRoutes:
    def test_run_checks(self, client, store):
        service = make_service(store, "github")
        resp = client.post("/api/admin/run-checks")
        assert resp.status_code == 200
        assert resp.json() == {"checked": 1, "failed": 0, "skipped": False}
        assert store.latest_result(service.id).latency_ms == 42

    def test_worker_status_and_stop_when_idle(self, client):
        status = client.get("/api/admin/worker").json()
        assert status["running"] is False
        assert status["last_summary"] is None

        resp = client.post("/api/admin/worker/stop")
        assert resp.json() == {"success": False, "message": "Worker not running"}

    def test_worker_start_rejects_short_interval(self, client):
        resp = client.post("/api/admin/worker/start", params={"interval_ms": 10})
        assert resp.status_code == 422

    def test_seed(self, client, store):
        resp = client.post("/api/admin/seed")
        assert resp.json() == {"success": True, "seeded": 2}
        assert store.get_service_by_slug("stripe").expected_status == 401

    def test_test_notification(self, client, notifier):
        resp = client.post("/api/admin/test-notification")
        assert resp.json() == {"success": True}
        assert notifier.calls[0][0] == "🧪 Test Notification from untap"


class TestExportRoutes:
    def test_export_check_results(self, client, store):
        service = make_service(store, "github")
        now = utcnow()
        add_results(store, service.id, [True, False], start=now - timedelta(minutes=10))
        add_results(store, service.id, [True], start=now - timedelta(days=2))

        resp = client.get("/api/export/check-results", params={
            "start_time": (now - timedelta(hours=1)).isoformat(),
            "end_time": now.isoformat(),
        })
        assert resp.status_code == 200
        rows = resp.json()
        assert len(rows) == 2
        assert rows[0]["serviceId"] == service.id
        assert rows[0]["checkedAt"] >= rows[1]["checkedAt"]

    def test_export_incidents(self, client, store):
        service = make_service(store, "github")
        now = utcnow()
        store.create_incident(service.id, now - timedelta(minutes=10), 60, "x")
        resp = client.get("/api/export/incidents", params={
            "start_time": (now - timedelta(hours=1)).isoformat(),
            "end_time": now.isoformat(),
        })
        assert [i["summary"] for i in resp.json()] == ["x"]

    def test_export_requires_range(self, client):
        assert client.get("/api/export/incidents").status_code == 422


class UnavailableStore:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise StoreUnavailableError("database is locked")
        return fail


class TestStoreUnavailable:
    @pytest.mark.parametrize("path", [
        "/api/services",
        "/api/services/categories",
        "/api/services/github",
        "/api/incidents/recent",
        "/api/incidents/open",
    ])
    def test_reads_return_503(self, app, path):
        app.state.health_store = UnavailableStore()
        resp = TestClient(app).get(path)
        assert resp.status_code == 503
        assert resp.json() == {"detail": "store unavailable"}
