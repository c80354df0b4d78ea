"""Live status derivation for read paths.

Independent of the incidents table: a service can read ``degraded`` while
no incident is open, because the evaluator's hysteresis band suppressed the
transition. The two views are meant to disagree in that band.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from untap.config import settings

from .engine import CheckResult

if TYPE_CHECKING:
    from .store import HealthStore

DOWN_THRESHOLD = 0.6
DEGRADED_THRESHOLD = 0.2


def to_percent(rate: float) -> int:
    """Whole percent, halves rounded up (62.5 -> 63)."""
    return math.floor(rate * 100 + 0.5)


class ServiceStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class LiveStatus:
    status: ServiceStatus
    failure_rate: float  # fraction, 0..1
    sample_count: int = 0

    @property
    def failure_percent(self) -> int:
        return to_percent(self.failure_rate)


def derive_status(results: Sequence[CheckResult]) -> LiveStatus:
    """Label a window of results: down >= 60% failures, degraded >= 20%."""
    if not results:
        return LiveStatus(ServiceStatus.OK, 0.0, 0)

    failures = sum(1 for r in results if not r.success)
    rate = failures / len(results)

    if rate >= DOWN_THRESHOLD:
        status = ServiceStatus.DOWN
    elif rate >= DEGRADED_THRESHOLD:
        status = ServiceStatus.DEGRADED
    else:
        status = ServiceStatus.OK
    return LiveStatus(status, rate, len(results))


def service_status(
    store: HealthStore,
    service_id: int,
    window_minutes: int | None = None,
    now: datetime | None = None,
) -> LiveStatus:
    """Derive the live status of one service from its recent results."""
    window = window_minutes or settings.status_window_minutes
    return derive_status(store.recent_results(service_id, window, now=now))
