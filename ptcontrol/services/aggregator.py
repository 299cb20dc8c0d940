"""Build the per-entity status snapshot served on ``/status``."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Union

from ptcontrol.models import ActuatorRecord, EntityRecord, SensorRecord
from ptcontrol.services.state_store import StateStore

logger = logging.getLogger(__name__)

SensorView = Dict[str, object]
StatusView = Union[SensorView, str]


def latest_per_key(records: Iterable[EntityRecord]) -> Dict[str, EntityRecord]:
    """Keep the newest record per key; equal ``updated_at`` falls back to ``revision``."""

    chosen: Dict[str, EntityRecord] = {}
    for record in records:
        current = chosen.get(record.key)
        if current is None or (record.updated_at, record.revision) > (current.updated_at, current.revision):
            chosen[record.key] = record
    return chosen


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def sensor_view(record: SensorRecord, now: datetime) -> SensorView:
    if record.liveness is not None:
        status = record.liveness.value
    elif record.value is not None:
        status = "OK"
    else:
        status = "OFFLINE"
    updated_at = _as_aware(record.updated_at)
    age = max(int(math.floor((now - updated_at).total_seconds())), 0)
    return {
        "status": status,
        "value": record.value,
        "unit": record.unit,
        "timestamp": updated_at.isoformat(),
        "age": age,
    }


def actuator_view(record: ActuatorRecord) -> str:
    return "OPEN" if record.engaged else "CLOSED"


def build_snapshot(records: Iterable[EntityRecord], now: Optional[datetime] = None) -> Dict[str, StatusView]:
    now = _as_aware(now) if now is not None else datetime.now(timezone.utc)
    snapshot: Dict[str, StatusView] = {}
    latest = latest_per_key(records)
    for key in sorted(latest):
        record = latest[key]
        if isinstance(record, ActuatorRecord):
            snapshot[key] = actuator_view(record)
        else:
            snapshot[key] = sensor_view(record, now)
    return snapshot


class StatusAggregator:
    """Reads the store and reshapes it; independent of any live control state."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def snapshot(self, now: Optional[datetime] = None) -> Dict[str, StatusView]:
        """Raises :class:`ptcontrol.exceptions.StoreReadError` when the store cannot be read."""

        records = await self.store.latest()
        snapshot = build_snapshot(records, now)
        logger.debug("Live status: %s", ", ".join(snapshot))
        return snapshot
