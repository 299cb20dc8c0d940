from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ptcontrol.config import Settings, get_settings
from ptcontrol.services.alerts import AlertBuffer

router = APIRouter()


@router.get("/alerts")
async def recent_alerts(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1),
    settings: Settings = Depends(get_settings),
):
    buffer: AlertBuffer = request.app.state.alerts
    count = min(limit or settings.alert_query_limit, buffer.capacity)
    return [alert.model_dump(mode="json") for alert in buffer.recent(count)]
