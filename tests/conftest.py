"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from untap.health.engine import CheckResult, ErrorCode
from untap.health.store import HealthStore
from untap.services.registry import Service

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock for deterministic windows."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeNotifier:
    """Records notify() calls; can be told to fail or raise."""

    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.result = result
        self.error = error

    async def notify(self, title: str, content: str) -> bool:
        self.calls.append((title, content))
        if self.error is not None:
            raise self.error
        return self.result


def make_service(store: HealthStore, slug: str = "example", **overrides) -> Service:
    fields = {
        "display_name": slug.title(),
        "check_type": "http",
        "check_target": f"https://{slug}.example.com/health",
        "category": "Developer",
    }
    fields.update(overrides)
    service = Service(slug=slug, **fields)
    store.upsert_service(service)
    return service


def add_results(
    store: HealthStore,
    service_id: int,
    outcomes: Sequence[bool],
    start: datetime = T0,
    step_s: int = 30,
) -> list[CheckResult]:
    """Append one result per outcome, ``step_s`` apart starting at ``start``."""
    results = []
    for i, ok in enumerate(outcomes):
        result = CheckResult(
            service_id=service_id,
            check_type="http",
            success=ok,
            latency_ms=100 + i,
            http_status=200 if ok else None,
            error_code=None if ok else ErrorCode.TIMEOUT.value,
            error_message=None if ok else "Request timed out after 5000ms",
            checked_at=start + timedelta(seconds=i * step_s),
        )
        store.append_check_result(result)
        results.append(result)
    return results


@pytest.fixture
def store(tmp_path: Path) -> Iterator[HealthStore]:
    s = HealthStore(db_path=tmp_path / "test_untap.db")
    yield s
    s.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
