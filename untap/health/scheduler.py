"""Health check scheduler — drives the periodic check cycle.

One tick: fetch active services, probe each one, append the result, then
let the incident evaluator look at the new window. Services within a tick
run concurrently (bounded) and fail independently. Ticks never overlap:
a tick requested while one is running is skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from untap.config import settings
from untap.services.registry import Service

from .engine import CheckResult, execute_check_bounded, utcnow
from .incidents import IncidentEvaluator
from .store import HealthStore

logger = logging.getLogger(__name__)

Probe = Callable[[Service, Executor], Awaitable[CheckResult]]


@dataclass
class TickSummary:
    checked: int = 0
    failed: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthScheduler:
    """Owns the worker loop: explicit start/stop, one tick at a time.

    ``probe``, ``clock`` and ``sleep`` are injectable so tests can drive
    ticks deterministically without network or wall-clock waits.
    """

    def __init__(
        self,
        store: HealthStore,
        evaluator: IncidentEvaluator,
        probe: Probe | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_concurrency: int | None = None,
        on_result: Callable[[Service, CheckResult], Any] | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.clock = clock
        self.on_result = on_result
        self._probe = probe or (lambda service, pool: execute_check_bounded(service, pool, clock))
        self._sleep = sleep
        self._max_concurrency = max_concurrency or settings.worker_max_concurrency
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="untap-probe",
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Task[None] | None = None
        self._running = False
        self._in_tick = False
        self._sleeping = False
        self._interval_ms: int | None = None
        self._last_tick_at: datetime | None = None
        self._last_summary: TickSummary | None = None

    # -- Lifecycle ------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, interval_ms: int | None = None) -> bool:
        """Run a tick now, then every ``interval_ms``. False if already running.

        A tick left over from a previous run is awaited first, so the new
        run's immediate tick is never skipped.
        """
        if self._running:
            logger.info("Worker already running")
            return False

        await self._drain()
        if self._running:
            logger.info("Worker already running")
            return False

        self._interval_ms = interval_ms or settings.worker_interval_ms
        self._running = True
        self._task = asyncio.create_task(self._loop(self._interval_ms / 1000), name="untap-worker")
        logger.info("Worker started with %dms interval", self._interval_ms)
        return True

    async def stop(self, wait: bool = False) -> bool:
        """Cancel future ticks. An in-flight tick finishes on its own.

        With ``wait`` the call returns only once that tick is done, which is
        what shutdown needs before closing the store.
        """
        if not self._running:
            if wait:
                await self._drain()
            return False

        self._running = False
        task, self._task = self._task, None
        if task is not None:
            if self._sleeping:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            else:
                self._stopping = task
        if wait:
            await self._drain()
        logger.info("Worker stopped")
        return True

    async def _drain(self) -> None:
        """Wait for the loop of a previous run to finish its last tick."""
        task, self._stopping = self._stopping, None
        if task is not None and not task.done():
            logger.info("Waiting for the in-flight tick to finish")
            await asyncio.gather(task, return_exceptions=True)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_ms": self._interval_ms,
            "tick_in_progress": self._in_tick,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_summary": self._last_summary.to_dict() if self._last_summary else None,
        }

    def _is_current(self) -> bool:
        return self._running and self._task is asyncio.current_task()

    async def _loop(self, interval_s: float) -> None:
        while self._is_current():
            t0 = time.monotonic()
            try:
                await self.run_once()
            except Exception:
                logger.exception("Worker tick crashed")

            if not self._is_current():
                break

            elapsed = time.monotonic() - t0
            if elapsed > interval_s:
                logger.warning(
                    "Tick took %.1fs, longer than the %.1fs interval; next tick starts now",
                    elapsed, interval_s,
                )
            self._sleeping = True
            try:
                await self._sleep(max(interval_s - elapsed, 0))
            except asyncio.CancelledError:
                break
            finally:
                self._sleeping = False

    # -- Ticks ----------------------------------------------------------------

    async def run_once(self) -> TickSummary:
        """Run one check cycle over all active services."""
        if self._in_tick:
            logger.warning("Previous tick still running — skipping")
            return TickSummary(skipped=True)

        self._in_tick = True
        try:
            return await self._tick()
        finally:
            self._in_tick = False

    async def _tick(self) -> TickSummary:
        self._last_tick_at = self.clock()
        logger.info("Starting health check run at %s", self._last_tick_at.isoformat())

        services = self.store.list_active_services()
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(service: Service) -> tuple[bool, bool]:
            async with semaphore:
                return await self._check_service(service)

        outcomes = await asyncio.gather(*(bounded(s) for s in services))

        summary = TickSummary(
            checked=sum(1 for stored, _ in outcomes if stored),
            failed=sum(1 for _, failed in outcomes if failed),
        )
        self._last_summary = summary
        logger.info(
            "Health check run complete: %d checked, %d failed", summary.checked, summary.failed,
        )
        return summary

    async def _check_service(self, service: Service) -> tuple[bool, bool]:
        """Probe, persist, evaluate. Returns (stored, failed)."""
        stored = False
        try:
            result = await self._probe(service, self._executor)
            self.store.append_check_result(result)
            stored = True

            if result.success:
                logger.debug("[Check] %s: OK (%sms)", service.slug, result.latency_ms)
            else:
                logger.info(
                    "[Check] %s: FAILED - %s: %s",
                    service.slug, result.error_code, result.error_message,
                )

            if self.on_result:
                try:
                    self.on_result(service, result)
                except Exception:
                    logger.exception("Result callback error")

            await self.evaluator.evaluate(service.id)
            return stored, not result.success
        except Exception:
            logger.exception("Error checking %s", service.slug)
            return stored, True
