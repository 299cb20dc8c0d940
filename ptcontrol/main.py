"""FastAPI application wiring telemetry ingestion, the control loop and the status API."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ptcontrol.config import get_settings
from ptcontrol.observability import configure_observability
from ptcontrol.routers import alerts as alerts_router
from ptcontrol.routers import root as root_router
from ptcontrol.routers import status as status_router
from ptcontrol.services.aggregator import StatusAggregator
from ptcontrol.services.alerts import AlertBuffer
from ptcontrol.services.control import ControlEngine
from ptcontrol.services.ingestion import TelemetryIngestor
from ptcontrol.services.live_state import LiveControlState
from ptcontrol.services.state_store import build_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    store = build_store(settings)
    alerts = AlertBuffer(settings.alert_capacity)
    live_state = LiveControlState()

    engine = None
    if settings.control_enabled:
        engine = ControlEngine(settings, store, alerts, live_state)
        engine.start()

    ingestor = None
    if settings.ingest_enabled:
        ingestor = TelemetryIngestor(
            settings,
            store,
            live_state if engine is not None else None,
        )
        ingestor.start()

    app.state.store = store
    app.state.alerts = alerts
    app.state.live_state = live_state
    app.state.engine = engine
    app.state.ingestor = ingestor
    app.state.aggregator = StatusAggregator(store)
    logger.info(
        "Control service started (ingest=%s, control=%s, store=%s)",
        settings.ingest_enabled,
        settings.control_enabled,
        settings.store_backend,
    )

    try:
        yield
    finally:
        ingestor: TelemetryIngestor | None = getattr(app.state, "ingestor", None)
        if ingestor:
            await ingestor.stop()
        engine: ControlEngine | None = getattr(app.state, "engine", None)
        if engine:
            await engine.stop()
        await store.close()
        logger.info("Control service stopped")


settings = get_settings()
app = FastAPI(title="PT Control", lifespan=lifespan)
configure_observability(app, settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(root_router.router)
app.include_router(status_router.router)
app.include_router(alerts_router.router)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("ptcontrol.main:app", host=settings.http_host, port=settings.http_port)
