from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/healthz")
async def healthz(request: Request):
    ingestor = getattr(request.app.state, "ingestor", None)
    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "ok",
        "mqtt_connected": bool(ingestor and ingestor.connected),
        "control_ticks": engine.tick_count if engine else None,
    }
