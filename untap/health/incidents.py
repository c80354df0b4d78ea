"""Incident evaluator — hysteresis state machine over a rolling window.

Per service there is either no incident or exactly one open incident.
After every new check result the last WINDOW_MINUTES of results decide:

- fewer than MIN_SAMPLES results: no transition, whatever the rate
- no incident and failure rate >= THRESHOLD_OPEN: open one
- open incident and failure rate <= THRESHOLD_CLOSE: resolve it
- anything in between: leave the state alone

The gap between the two thresholds is what stops a noisy service from
flapping between open and resolved.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from untap.config import settings

from .engine import CheckResult, utcnow
from .status import to_percent
from .store import HealthStore, IncidentConflictError

logger = logging.getLogger(__name__)

WINDOW_MINUTES = 5
MIN_SAMPLES = 5
THRESHOLD_OPEN = 0.6
THRESHOLD_CLOSE = 0.2


class Transition(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    OPENED = "opened"
    RESOLVED = "resolved"
    UNCHANGED = "unchanged"


@dataclass
class Evaluation:
    """What one evaluation saw and did."""

    service_id: int
    transition: Transition
    sample_count: int = 0
    failures: int = 0
    failure_rate: float = 0.0
    incident_id: int | None = None

    @property
    def failure_percent(self) -> int:
        return to_percent(self.failure_rate)


class IncidentEvaluator:
    """Opens and resolves incidents from a service's recent check results.

    Each service's read-decide-write sequence runs under its own asyncio
    lock, so concurrent evaluations of one service serialize while
    different services proceed independently. The store's one-open-incident
    index backs this up across processes.
    """

    def __init__(
        self,
        store: HealthStore,
        notifier: Any | None = None,
        clock: Callable[[], datetime] = utcnow,
        window_minutes: int | None = None,
        min_samples: int | None = None,
        threshold_open: float | None = None,
        threshold_close: float | None = None,
        notify_timeout_s: float | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.window_minutes = window_minutes or settings.incident_window_minutes
        self.min_samples = min_samples or settings.incident_min_samples
        self.threshold_open = threshold_open if threshold_open is not None else settings.incident_threshold_open
        self.threshold_close = threshold_close if threshold_close is not None else settings.incident_threshold_close
        self.notify_timeout_s = notify_timeout_s or settings.notify_timeout_s
        if not self.threshold_close < self.threshold_open:
            raise ValueError("close threshold must be below open threshold")
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, service_id: int) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = self._locks[service_id] = asyncio.Lock()
        return lock

    async def evaluate(self, service_id: int) -> Evaluation:
        """Run one evaluation for a service and apply any transition."""
        async with self._lock_for(service_id):
            return await self._evaluate_locked(service_id)

    async def _evaluate_locked(self, service_id: int) -> Evaluation:
        now = self.clock()
        window = self.store.recent_results(service_id, self.window_minutes, now=now)
        n = len(window)
        if n < self.min_samples:
            return Evaluation(service_id, Transition.INSUFFICIENT_DATA, sample_count=n)

        failures = sum(1 for r in window if not r.success)
        evaluation = Evaluation(
            service_id, Transition.UNCHANGED,
            sample_count=n, failures=failures, failure_rate=failures / n,
        )

        current = self.store.get_open_incident(service_id)
        if current is None:
            if evaluation.failure_rate >= self.threshold_open:
                await self._open(evaluation, window, now)
        else:
            evaluation.incident_id = current.id
            if evaluation.failure_rate <= self.threshold_close:
                await self._resolve(evaluation, window, now)
        return evaluation

    # -- Transitions ----------------------------------------------------------

    async def _open(self, evaluation: Evaluation, window: list[CheckResult], now: datetime) -> None:
        service_id = evaluation.service_id
        pct = evaluation.failure_percent
        failed_at = [r.checked_at for r in window if not r.success and r.checked_at]
        started_at = min(failed_at) if failed_at else now

        try:
            incident_id = self.store.create_incident(
                service_id,
                started_at=started_at,
                failure_rate=pct,
                summary=f"Service experiencing {pct}% failure rate",
                details={"failures": evaluation.failures, "sample_count": evaluation.sample_count},
            )
        except IncidentConflictError:
            logger.info("Incident already open for service %s — skipping", service_id)
            return

        evaluation.transition = Transition.OPENED
        evaluation.incident_id = incident_id
        logger.info(
            "Opened incident %d for service %s (%d%% failure rate)", incident_id, service_id, pct,
        )

        service = self.store.get_service(service_id)
        if service is None or not service.is_critical:
            return

        sent = await self._notify(
            f"🚨 Critical Service Down: {service.display_name}",
            f'The service "{service.display_name}" is experiencing issues.\n\n'
            f"Failure Rate: {pct}%\n"
            f"Check Target: {service.check_target}\n\n"
            f"Incident opened at {now.isoformat()}",
        )
        if sent:
            try:
                self.store.mark_notified(incident_id, now)
            except Exception:
                logger.exception("Failed to record notification for incident %d", incident_id)
            logger.info("Sent alert for critical service %s", service.display_name)

    async def _resolve(self, evaluation: Evaluation, window: list[CheckResult], now: datetime) -> None:
        incident_id = evaluation.incident_id
        succeeded_at = [r.checked_at for r in window if r.success and r.checked_at]
        ended_at = max(succeeded_at) if succeeded_at else now

        if not self.store.resolve_incident(incident_id, ended_at):
            logger.info("Incident %d was already resolved", incident_id)
            return

        evaluation.transition = Transition.RESOLVED
        logger.info("Resolved incident %d for service %s", incident_id, evaluation.service_id)

        service = self.store.get_service(evaluation.service_id)
        if service is None or not service.is_critical:
            return

        await self._notify(
            f"✅ Service Recovered: {service.display_name}",
            f'The service "{service.display_name}" has recovered.\n\n'
            f"Current Failure Rate: {evaluation.failure_percent}%\n\n"
            f"Incident resolved at {now.isoformat()}",
        )

    async def _notify(self, title: str, content: str) -> bool:
        """Best-effort delivery; never undoes a committed transition."""
        if self.notifier is None:
            return False
        try:
            return bool(await asyncio.wait_for(
                self.notifier.notify(title, content), timeout=self.notify_timeout_s,
            ))
        except Exception:
            logger.warning("Notification failed: %s", title, exc_info=True)
            return False

