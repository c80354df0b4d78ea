"""SQLite-backed storage for services, check results and incidents.

Check results are append-only. At most one incident per service may be
open: a partial unique index rejects a second open row, so a racing writer
gets IncidentConflictError instead of a duplicate.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from untap.config import settings
from untap.services.registry import Service

from .engine import CheckResult, utcnow

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """The backing database cannot be reached or queried."""


class IncidentConflictError(RuntimeError):
    """An open incident already exists for the service."""


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class Incident:
    """A real outage derived from a window of failing checks."""

    id: int
    service_id: int
    started_at: datetime
    status: str = "open"  # open | resolved
    ended_at: datetime | None = None
    failure_rate: int | None = None  # percent at the triggering evaluation
    summary: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    notified_at: datetime | None = None
    created_at: datetime | None = None
    # Joined from services on feed queries
    service_slug: str | None = None
    service_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serviceId": self.service_id,
            "serviceSlug": self.service_slug,
            "serviceName": self.service_name,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "status": self.status,
            "failureRate": self.failure_rate,
            "summary": self.summary,
            "notifiedAt": _iso(self.notified_at),
        }


# ── Timestamp helpers ────────────────────────────────────────────────────────


def _to_db(dt: datetime | None) -> str | None:
    """UTC ISO-8601 with fixed precision, so text order is time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


# ── Row mappers ──────────────────────────────────────────────────────────────


def _row_to_service(row: sqlite3.Row) -> Service:
    return Service(
        id=row["id"],
        slug=row["slug"],
        display_name=row["display_name"],
        check_type=row["check_type"],
        check_target=row["check_target"],
        category=row["category"],
        homepage_url=row["homepage_url"],
        expected_status=row["expected_status"],
        expected_body=row["expected_body"],
        timeout_ms=row["timeout_ms"],
        check_interval_s=row["check_interval_s"],
        is_active=bool(row["is_active"]),
        is_critical=bool(row["is_critical"]),
    )


def _row_to_result(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=row["id"],
        service_id=row["service_id"],
        checked_at=_from_db(row["checked_at"]),
        check_type=row["check_type"],
        success=bool(row["success"]),
        http_status=row["http_status"],
        latency_ms=row["latency_ms"],
        error_code=row["error_code"],
        error_message=row["error_message"],
    )


def _row_to_incident(row: sqlite3.Row) -> Incident:
    keys = row.keys()
    return Incident(
        id=row["id"],
        service_id=row["service_id"],
        started_at=_from_db(row["started_at"]),
        ended_at=_from_db(row["ended_at"]),
        status=row["status"],
        failure_rate=row["failure_rate"],
        summary=row["summary"],
        details=json.loads(row["details"]) if row["details"] else {},
        notified_at=_from_db(row["notified_at"]),
        created_at=_from_db(row["created_at"]),
        service_slug=row["service_slug"] if "service_slug" in keys else None,
        service_name=row["service_name"] if "service_name" in keys else None,
    )


_INCIDENT_WITH_SERVICE = (
    "SELECT i.*, s.slug AS service_slug, s.display_name AS service_name "
    "FROM incidents i LEFT JOIN services s ON s.id = i.service_id "
)


# ── Store ────────────────────────────────────────────────────────────────────


class HealthStore:
    """SQLite-backed storage for services, check results and incidents."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.db_path
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self._lock = threading.RLock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailableError(f"store is closed: {self._db_path}")
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and surface driver failures as StoreUnavailableError."""
        with self._lock:
            try:
                conn = self._get_conn()
                yield conn
                conn.commit()
            except sqlite3.IntegrityError:
                if self._conn is not None:
                    self._conn.rollback()
                raise
            except (sqlite3.Error, OSError) as e:
                if self._conn is not None:
                    try:
                        self._conn.rollback()
                    except sqlite3.Error:
                        self._drop_conn()
                logger.error("Store unavailable (%s): %s", self._db_path, e)
                raise StoreUnavailableError(str(e)) from e

    def _init_db(self) -> None:
        with self._cursor() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS services (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    category TEXT,
                    homepage_url TEXT,
                    check_type TEXT NOT NULL,
                    check_target TEXT NOT NULL,
                    expected_status INTEGER DEFAULT 200,
                    expected_body TEXT,
                    timeout_ms INTEGER DEFAULT 5000,
                    check_interval_s INTEGER DEFAULT 60,
                    is_active INTEGER DEFAULT 1,
                    is_critical INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS check_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    service_id INTEGER NOT NULL,
                    checked_at TEXT NOT NULL,
                    check_type TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    http_status INTEGER,
                    latency_ms INTEGER,
                    error_code TEXT,
                    error_message TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_results_service
                    ON check_results (service_id, checked_at);

                CREATE TABLE IF NOT EXISTS incidents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    service_id INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    status TEXT NOT NULL DEFAULT 'open',
                    failure_rate INTEGER,
                    summary TEXT,
                    details TEXT,
                    created_at TEXT NOT NULL,
                    notified_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_incidents_service
                    ON incidents (service_id, started_at DESC);

                CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
                    ON incidents (service_id) WHERE status = 'open';
            """)

    # -- Services -------------------------------------------------------------

    def upsert_service(self, service: Service) -> int:
        """Insert or update a service by slug and return its id."""
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO services "
                "(slug, display_name, category, homepage_url, check_type, check_target, "
                "expected_status, expected_body, timeout_ms, check_interval_s, "
                "is_active, is_critical, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(slug) DO UPDATE SET "
                "display_name = excluded.display_name, category = excluded.category, "
                "homepage_url = excluded.homepage_url, check_type = excluded.check_type, "
                "check_target = excluded.check_target, expected_status = excluded.expected_status, "
                "expected_body = excluded.expected_body, timeout_ms = excluded.timeout_ms, "
                "check_interval_s = excluded.check_interval_s, is_active = excluded.is_active, "
                "is_critical = excluded.is_critical",
                (
                    service.slug, service.display_name, service.category, service.homepage_url,
                    service.check_type, service.check_target, service.expected_status,
                    service.expected_body, service.timeout_ms, service.check_interval_s,
                    int(service.is_active), int(service.is_critical), _to_db(utcnow()),
                ),
            )
            row = conn.execute("SELECT id FROM services WHERE slug = ?", (service.slug,)).fetchone()
        service.id = row["id"]
        return service.id

    def list_services(self, active_only: bool = False) -> list[Service]:
        query = "SELECT * FROM services"
        if active_only:
            query += " WHERE is_active = 1"
        with self._cursor() as conn:
            rows = conn.execute(query + " ORDER BY display_name").fetchall()
        return [_row_to_service(r) for r in rows]

    def list_active_services(self) -> list[Service]:
        return self.list_services(active_only=True)

    def get_service(self, service_id: int) -> Service | None:
        with self._cursor() as conn:
            row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        return _row_to_service(row) if row else None

    def get_service_by_slug(self, slug: str) -> Service | None:
        with self._cursor() as conn:
            row = conn.execute("SELECT * FROM services WHERE slug = ?", (slug,)).fetchone()
        return _row_to_service(row) if row else None

    def categories(self) -> list[str]:
        """Distinct categories of active services."""
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT DISTINCT category FROM services "
                "WHERE is_active = 1 AND category IS NOT NULL AND category != '' "
                "ORDER BY category",
            ).fetchall()
        return [r["category"] for r in rows]

    # -- Check results --------------------------------------------------------

    def append_check_result(self, result: CheckResult) -> int:
        """Insert-only write of a probe outcome."""
        with self._cursor() as conn:
            cursor = conn.execute(
                "INSERT INTO check_results "
                "(service_id, checked_at, check_type, success, http_status, latency_ms, "
                "error_code, error_message) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    result.service_id, _to_db(result.checked_at), result.check_type,
                    int(result.success), result.http_status, result.latency_ms,
                    result.error_code, result.error_message,
                ),
            )
        result.id = cursor.lastrowid
        return result.id

    def recent_results(
        self, service_id: int, window_minutes: int, now: datetime | None = None,
    ) -> list[CheckResult]:
        """Results from the last ``window_minutes``, oldest first."""
        now = now or utcnow()
        return self.results_between(service_id, now - timedelta(minutes=window_minutes), now)

    def results_between(
        self, service_id: int, start: datetime, end: datetime,
    ) -> list[CheckResult]:
        """Results with start <= checked_at <= end, oldest first."""
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results "
                "WHERE service_id = ? AND checked_at >= ? AND checked_at <= ? "
                "ORDER BY checked_at, id",
                (service_id, _to_db(start), _to_db(end)),
            ).fetchall()
        return [_row_to_result(r) for r in rows]

    def latest_result(self, service_id: int) -> CheckResult | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT * FROM check_results WHERE service_id = ? "
                "ORDER BY checked_at DESC, id DESC LIMIT 1",
                (service_id,),
            ).fetchone()
        return _row_to_result(row) if row else None

    def results_for_export(
        self, start: datetime, end: datetime, limit: int = 10_000,
    ) -> list[CheckResult]:
        """All services' results in a time range, newest first."""
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results WHERE checked_at >= ? AND checked_at <= ? "
                "ORDER BY checked_at DESC, id DESC LIMIT ?",
                (_to_db(start), _to_db(end), limit),
            ).fetchall()
        return [_row_to_result(r) for r in rows]

    # -- Incidents ------------------------------------------------------------

    def get_open_incident(self, service_id: int) -> Incident | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT * FROM incidents WHERE service_id = ? AND status = 'open' "
                "ORDER BY started_at DESC LIMIT 1",
                (service_id,),
            ).fetchone()
        return _row_to_incident(row) if row else None

    def create_incident(
        self,
        service_id: int,
        started_at: datetime,
        failure_rate: int,
        summary: str,
        details: dict[str, Any] | None = None,
    ) -> int:
        """Open an incident. Raises IncidentConflictError if one is already open."""
        try:
            with self._cursor() as conn:
                cursor = conn.execute(
                    "INSERT INTO incidents "
                    "(service_id, started_at, status, failure_rate, summary, details, created_at) "
                    "VALUES (?, ?, 'open', ?, ?, ?, ?)",
                    (
                        service_id, _to_db(started_at), failure_rate, summary,
                        json.dumps(details) if details else None, _to_db(utcnow()),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise IncidentConflictError(
                f"service {service_id} already has an open incident",
            ) from e
        return cursor.lastrowid

    def resolve_incident(self, incident_id: int, ended_at: datetime) -> bool:
        """Close an open incident. Returns False if it was not open."""
        with self._cursor() as conn:
            cursor = conn.execute(
                "UPDATE incidents SET status = 'resolved', ended_at = ? "
                "WHERE id = ? AND status = 'open'",
                (_to_db(ended_at), incident_id),
            )
        return cursor.rowcount == 1

    def mark_notified(self, incident_id: int, at: datetime | None = None) -> None:
        with self._cursor() as conn:
            conn.execute(
                "UPDATE incidents SET notified_at = ? WHERE id = ?",
                (_to_db(at or utcnow()), incident_id),
            )

    def get_incident(self, incident_id: int) -> Incident | None:
        with self._cursor() as conn:
            row = conn.execute(
                _INCIDENT_WITH_SERVICE + "WHERE i.id = ?", (incident_id,),
            ).fetchone()
        return _row_to_incident(row) if row else None

    def incidents_for_service(self, service_id: int, limit: int = 20) -> list[Incident]:
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT * FROM incidents WHERE service_id = ? "
                "ORDER BY started_at DESC LIMIT ?",
                (service_id, limit),
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    def recent_incidents(self, limit: int = 10) -> list[Incident]:
        """Latest incidents across all services, with service slug/name."""
        with self._cursor() as conn:
            rows = conn.execute(
                _INCIDENT_WITH_SERVICE + "ORDER BY i.started_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    def open_incidents(self) -> list[Incident]:
        with self._cursor() as conn:
            rows = conn.execute(
                _INCIDENT_WITH_SERVICE + "WHERE i.status = 'open' ORDER BY i.started_at DESC",
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    def incidents_between(self, start: datetime, end: datetime) -> list[Incident]:
        with self._cursor() as conn:
            rows = conn.execute(
                _INCIDENT_WITH_SERVICE
                + "WHERE i.started_at >= ? AND i.started_at <= ? ORDER BY i.started_at DESC",
                (_to_db(start), _to_db(end)),
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    def _drop_conn(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def close(self) -> None:
        """Close the connection. Later calls raise StoreUnavailableError."""
        with self._lock:
            self._closed = True
            self._drop_conn()
