"""FastAPI server for the monitoring API and worker."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from untap.api.health_routes import health_router
from untap.config import settings
from untap.health.incidents import IncidentEvaluator
from untap.health.scheduler import HealthScheduler
from untap.health.store import HealthStore, StoreUnavailableError
from untap.notifications import NotificationManager
from untap.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire store, evaluator and worker on startup; stop them on shutdown."""
    store = HealthStore()
    app.state.health_store = store

    registry = ServiceRegistry()
    app.state.registry = registry
    if settings.seed_on_startup:
        try:
            registry.seed(store)
        except StoreUnavailableError:
            logger.exception("Seeding failed — store unavailable")

    notifier = NotificationManager()
    app.state.notifier = notifier
    logger.info("Notifications: %s", notifier.status())

    evaluator = IncidentEvaluator(store, notifier)
    app.state.incident_evaluator = evaluator

    scheduler = HealthScheduler(store, evaluator)
    app.state.health_scheduler = scheduler
    if settings.worker_autostart:
        await scheduler.start(settings.worker_interval_ms)

    yield

    await scheduler.stop(wait=True)
    scheduler.close()
    store.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="untap - service monitor",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "store unavailable"})

    app.include_router(health_router, prefix="/api")
    return app


app = create_app()
