"""API routes for service status, incidents and worker control.

Endpoints:
  GET  /api/services                  — status summary for every active service
  GET  /api/services/categories       — distinct service categories
  GET  /api/services/{slug}           — detail: check series + incident history
  GET  /api/incidents/recent          — latest incidents across services
  GET  /api/incidents/open            — currently open incidents
  POST /api/admin/run-checks          — run one check cycle now
  POST /api/admin/worker/start        — start the periodic worker
  POST /api/admin/worker/stop         — stop the periodic worker
  GET  /api/admin/worker              — worker state
  POST /api/admin/seed                — load services.yaml into the store
  POST /api/admin/test-notification   — send a test notification
  GET  /api/export/check-results      — raw results in a time range
  GET  /api/export/incidents          — incidents in a time range
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request

from untap.health.engine import utcnow
from untap.health.status import service_status
from untap.health.store import HealthStore
from untap.services.registry import Service

logger = logging.getLogger(__name__)

health_router = APIRouter()

WINDOW_HOURS: dict[str, int] = {
    "1h": 1,
    "6h": 6,
    "12h": 12,
    "24h": 24,
    "7d": 168,
}

Window = Literal["1h", "6h", "12h", "24h", "7d"]


def _store(request: Request) -> HealthStore:
    return request.app.state.health_store


def _service_summary(store: HealthStore, service: Service) -> dict[str, Any]:
    latest = store.latest_result(service.id)
    live = service_status(store, service.id)
    incident = store.get_open_incident(service.id)
    return {
        "slug": service.slug,
        "displayName": service.display_name,
        "category": service.category,
        "homepageUrl": service.homepage_url,
        "currentStatus": live.status.value,
        "lastCheck": latest.checked_at.isoformat() if latest else None,
        "latencyMs": latest.latency_ms if latest else None,
        "failureRate": live.failure_percent,
        "openIncident": {
            "id": incident.id,
            "startedAt": incident.started_at.isoformat(),
            "failureRate": incident.failure_rate,
        } if incident else None,
    }


# ── Service endpoints ────────────────────────────────────────────────────────


@health_router.get("/services")
def list_services(request: Request) -> list[dict[str, Any]]:
    """Status summary for all active services."""
    store = _store(request)
    return [_service_summary(store, s) for s in store.list_active_services()]


@health_router.get("/services/categories")
def list_categories(request: Request) -> list[str]:
    return _store(request).categories()


@health_router.get("/services/{slug}")
def get_service(slug: str, request: Request, window: Window = "24h") -> dict[str, Any]:
    """Detail view: chronological check series and incident history."""
    store = _store(request)
    service = store.get_service_by_slug(slug)
    if not service:
        raise HTTPException(status_code=404, detail=f"Service not found: {slug}")

    end = utcnow()
    start = end - timedelta(hours=WINDOW_HOURS[window])
    checks = store.results_between(service.id, start, end)
    incidents = store.incidents_for_service(service.id, limit=20)
    live = service_status(store, service.id, now=end)

    return {
        "service": {
            "slug": service.slug,
            "displayName": service.display_name,
            "category": service.category,
            "homepageUrl": service.homepage_url,
            "checkType": service.check_type,
            "checkTarget": service.check_target,
            "expectedStatus": service.expected_status,
            "isCritical": service.is_critical,
        },
        "window": window,
        "currentStatus": live.status.value,
        "failureRate": live.failure_percent,
        "checks": [
            {
                "t": c.checked_at.isoformat(),
                "success": c.success,
                "latencyMs": c.latency_ms,
                "httpStatus": c.http_status,
                "errorCode": c.error_code,
            }
            for c in checks
        ],
        "incidents": [
            {
                "id": i.id,
                "startedAt": i.started_at.isoformat(),
                "endedAt": i.ended_at.isoformat() if i.ended_at else None,
                "status": i.status,
                "failureRate": i.failure_rate,
                "summary": i.summary,
            }
            for i in incidents
        ],
    }


# ── Incident feeds ───────────────────────────────────────────────────────────


@health_router.get("/incidents/recent")
def recent_incidents(request: Request, limit: int = Query(10, ge=1, le=50)) -> list[dict[str, Any]]:
    return [i.to_dict() for i in _store(request).recent_incidents(limit)]


@health_router.get("/incidents/open")
def open_incidents(request: Request) -> list[dict[str, Any]]:
    return [i.to_dict() for i in _store(request).open_incidents()]


# ── Admin triggers ───────────────────────────────────────────────────────────


@health_router.post("/admin/run-checks")
async def run_checks(request: Request) -> dict[str, Any]:
    """Run one check cycle immediately."""
    summary = await request.app.state.health_scheduler.run_once()
    return summary.to_dict()


@health_router.post("/admin/worker/start")
async def start_worker(
    request: Request, interval_ms: int = Query(60_000, ge=1_000),
) -> dict[str, Any]:
    started = await request.app.state.health_scheduler.start(interval_ms)
    message = f"Worker started with {interval_ms}ms interval" if started else "Worker already running"
    return {"success": started, "message": message}


@health_router.post("/admin/worker/stop")
async def stop_worker(request: Request) -> dict[str, Any]:
    stopped = await request.app.state.health_scheduler.stop()
    return {"success": stopped, "message": "Worker stopped" if stopped else "Worker not running"}


@health_router.get("/admin/worker")
def worker_status(request: Request) -> dict[str, Any]:
    return request.app.state.health_scheduler.status()


@health_router.post("/admin/seed")
def seed_services(request: Request) -> dict[str, Any]:
    """Load the service catalog into the store."""
    registry = request.app.state.registry
    count = registry.seed(_store(request))
    return {"success": True, "seeded": count}


@health_router.post("/admin/test-notification")
async def test_notification(request: Request) -> dict[str, Any]:
    notifier = request.app.state.notifier
    success = await notifier.notify(
        "🧪 Test Notification from untap",
        "This is a test notification to verify the notification system is working correctly.",
    )
    return {"success": success}


# ── Export ───────────────────────────────────────────────────────────────────


@health_router.get("/export/check-results")
def export_check_results(
    request: Request,
    start_time: datetime,
    end_time: datetime,
    limit: int = Query(10_000, ge=1, le=50_000),
) -> list[dict[str, Any]]:
    results = _store(request).results_for_export(start_time, end_time, limit)
    return [r.to_dict() for r in results]


@health_router.get("/export/incidents")
def export_incidents(
    request: Request, start_time: datetime, end_time: datetime,
) -> list[dict[str, Any]]:
    return [i.to_dict() for i in _store(request).incidents_between(start_time, end_time)]
