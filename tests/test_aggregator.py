from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ptcontrol.exceptions import StoreReadError
from ptcontrol.models import ActuatorRecord, Liveness, SensorRecord
from ptcontrol.services.aggregator import StatusAggregator, build_snapshot, latest_per_key
from ptcontrol.services.state_store import MemoryStateStore

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class _BrokenStore(MemoryStateStore):
    async def _latest(self):
        raise RuntimeError("server selection timeout")


def test_snapshot_shapes_sensors_and_actuators() -> None:
    records = [
        SensorRecord(key="Temperature", value=100, unit="C", liveness=Liveness.OK, updated_at=T0),
        ActuatorRecord(key="heat_valve", engaged=False, updated_at=T0 + timedelta(seconds=1)),
    ]
    snapshot = build_snapshot(records, now=T0 + timedelta(seconds=12, milliseconds=900))

    assert snapshot["heat_valve"] == "CLOSED"
    assert snapshot["Temperature"] == {
        "status": "OK",
        "value": 100,
        "unit": "C",
        "timestamp": T0.isoformat(),
        "age": 12,
    }
    assert set(snapshot) == {"Temperature", "heat_valve"}


def test_engaged_actuator_is_open() -> None:
    snapshot = build_snapshot([ActuatorRecord(key="cool_valve", engaged=True, updated_at=T0)], now=T0)
    assert snapshot == {"cool_valve": "OPEN"}


@pytest.mark.parametrize(
    "liveness, value, expected",
    [
        (Liveness.FAILED, 12.0, "FAILED"),
        (Liveness.OK, None, "OK"),
        (None, 3.0, "OK"),
        (None, 0.0, "OK"),
        (None, None, "OFFLINE"),
    ],
)
def test_sensor_status_fallbacks(liveness, value, expected) -> None:
    record = SensorRecord(key="Pressure", value=value, unit="bar", liveness=liveness, updated_at=T0)
    assert build_snapshot([record], now=T0)["Pressure"]["status"] == expected


def test_age_never_negative_for_clock_skew() -> None:
    record = SensorRecord(key="Pressure", value=4.0, updated_at=T0 + timedelta(seconds=5))
    assert build_snapshot([record], now=T0)["Pressure"]["age"] == 0


def test_naive_timestamps_are_treated_as_utc() -> None:
    record = SensorRecord(key="Pressure", value=4.0, updated_at=T0.replace(tzinfo=None))
    assert build_snapshot([record], now=T0 + timedelta(seconds=30))["Pressure"]["age"] == 30


def test_latest_per_key_prefers_newest_then_highest_revision() -> None:
    older = ActuatorRecord(key="cool_valve", engaged=True, updated_at=T0, revision=9)
    newer = ActuatorRecord(key="cool_valve", engaged=False, updated_at=T0 + timedelta(seconds=1), revision=3)
    tied = ActuatorRecord(key="cool_valve", engaged=True, updated_at=T0 + timedelta(seconds=1), revision=4)

    assert latest_per_key([older, newer])["cool_valve"] is newer
    assert latest_per_key([tied, newer])["cool_valve"] is tied
    assert latest_per_key([newer, tied])["cool_valve"] is tied


def test_snapshot_keys_are_sorted_and_missing_keys_absent() -> None:
    records = [
        ActuatorRecord(key="pressureOut_valve", engaged=True, updated_at=T0),
        SensorRecord(key="Pressure", value=9.0, unit="bar", updated_at=T0),
    ]
    snapshot = build_snapshot(records, now=T0)
    assert list(snapshot) == ["Pressure", "pressureOut_valve"]
    assert "Temperature" not in snapshot
    assert "pressureIn_valve" not in snapshot


def test_aggregator_reads_store() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        await store.upsert("Temperature", "Sensor", {"value": 20.0, "unit": "C", "liveness": "OK"})
        await store.upsert("cool_valve", "Actuator", {"engaged": True, "origin": "control"})
        snapshot = await StatusAggregator(store).snapshot()
        assert snapshot["cool_valve"] == "OPEN"
        assert snapshot["Temperature"]["value"] == 20.0
        assert snapshot["Temperature"]["age"] == 0

    asyncio.run(runner())


def test_aggregator_surfaces_read_errors() -> None:
    async def runner() -> None:
        with pytest.raises(StoreReadError):
            await StatusAggregator(_BrokenStore()).snapshot()

    asyncio.run(runner())
