from __future__ import annotations

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from ptcontrol.exceptions import StoreReadError
from ptcontrol.services.aggregator import StatusAggregator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status")
async def status_endpoint(request: Request):
    aggregator: StatusAggregator = request.app.state.aggregator
    try:
        return await aggregator.snapshot()
    except StoreReadError as exc:
        logger.error("Status generation failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Status generation failed"},
        )
