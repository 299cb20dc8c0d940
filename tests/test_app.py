from __future__ import annotations

import asyncio
import importlib
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ptcontrol.config import get_settings
from ptcontrol.observability import REQUEST_ID_HEADER
from ptcontrol.services import ingestion
from ptcontrol.services.aggregator import StatusAggregator
from ptcontrol.services.control import Transition
from ptcontrol.services.state_store import MemoryStateStore


class _BrokenStore(MemoryStateStore):
    async def _latest(self):
        raise ConnectionError("store unreachable")


@pytest.fixture(scope="module")
def api(tmp_path_factory) -> TestClient:
    """Isolated TestClient with MQTT ingestion and the control loop switched off."""

    tmp_dir = tmp_path_factory.mktemp("pt-control")
    mp = pytest.MonkeyPatch()
    mp.setenv("PT_STORE_BACKEND", "sqlite")
    mp.setenv("PT_STORE_PATH", str(Path(tmp_dir) / "pt_state.db"))
    mp.setenv("PT_INGEST_ENABLED", "false")
    mp.setenv("PT_CONTROL_ENABLED", "false")
    get_settings.cache_clear()

    import ptcontrol.main as main_module

    importlib.reload(main_module)
    client_context = TestClient(main_module.app)
    client = client_context.__enter__()
    try:
        yield client
    finally:
        client_context.__exit__(None, None, None)
        mp.undo()
        get_settings.cache_clear()


def test_healthz_reports_disabled_components(api):
    resp = api.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "mqtt_connected": False, "control_ticks": None}


def test_status_reflects_store_contents(api):
    store = api.app.state.store

    async def seed() -> None:
        await store.upsert("Temperature", "Sensor", {"value": 100.0, "unit": "C", "liveness": "OK"})
        await store.upsert("heat_valve", "Actuator", {"engaged": False, "origin": "control"})
        await store.upsert("pressureOut_valve", "Actuator", {"engaged": True, "origin": "control"})

    asyncio.run(seed())

    resp = api.get("/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["heat_valve"] == "CLOSED"
    assert body["pressureOut_valve"] == "OPEN"
    assert body["Temperature"]["status"] == "OK"
    assert body["Temperature"]["value"] == 100.0
    assert body["Temperature"]["unit"] == "C"
    assert isinstance(body["Temperature"]["age"], int)
    assert body["Temperature"]["timestamp"]
    assert "Pressure" not in body


def test_status_returns_500_when_store_unreadable(api):
    original = api.app.state.aggregator
    api.app.state.aggregator = StatusAggregator(_BrokenStore())
    try:
        resp = api.get("/status")
    finally:
        api.app.state.aggregator = original
    assert resp.status_code == 500
    assert resp.json() == {"error": "Status generation failed"}


def test_alerts_returns_three_most_recent_by_default(api):
    buffer = api.app.state.alerts
    for value in (96, 97, 98, 99):
        buffer.append(f"Temperature is too high: {value}°C. Cooling valve is OPEN.")

    resp = api.get("/alerts")
    assert resp.status_code == 200
    body = resp.json()
    assert [item["message"] for item in body] == [
        "Temperature is too high: 97°C. Cooling valve is OPEN.",
        "Temperature is too high: 98°C. Cooling valve is OPEN.",
        "Temperature is too high: 99°C. Cooling valve is OPEN.",
    ]
    assert all(item["timestamp"] for item in body)

    resp = api.get("/alerts", params={"limit": 1})
    assert [item["message"] for item in resp.json()] == [
        "Temperature is too high: 99°C. Cooling valve is OPEN."
    ]


def test_alerts_rejects_non_positive_limit(api):
    assert api.get("/alerts", params={"limit": 0}).status_code == 422


def test_request_id_is_echoed_or_generated(api):
    resp = api.get("/healthz", headers={REQUEST_ID_HEADER: "req-123"})
    assert resp.headers[REQUEST_ID_HEADER] == "req-123"

    resp = api.get("/healthz")
    assert len(resp.headers[REQUEST_ID_HEADER]) == 32


def test_cors_allows_configured_origin(api):
    resp = api.get("/healthz", headers={"Origin": "http://dashboard.local"})
    assert resp.headers["access-control-allow-origin"] == "*"


class _IdleBroker:
    """Stands in for aiomqtt.Client: connects, accepts subscriptions, never delivers."""

    def __init__(self, host, **kwargs) -> None:
        self.subscriptions = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))

    @property
    def messages(self):
        async def _iter():
            await asyncio.Event().wait()
            yield None

        return _iter()


def test_lifespan_feeds_ingested_telemetry_to_control_loop(monkeypatch):
    monkeypatch.setenv("PT_STORE_BACKEND", "memory")
    monkeypatch.setenv("PT_INGEST_ENABLED", "true")
    monkeypatch.setenv("PT_CONTROL_ENABLED", "true")
    monkeypatch.setenv("PT_CONTROL_INTERVAL_SECONDS", "3600")
    monkeypatch.setattr(ingestion, "Client", _IdleBroker)
    get_settings.cache_clear()

    import ptcontrol.main as main_module

    importlib.reload(main_module)
    with TestClient(main_module.app) as client:
        state = main_module.app.state
        assert state.ingestor.live_state is state.engine.state

        async def drive():
            assert await state.ingestor.handle_message("sensors/pressure/data", b"9.0")
            transitions = state.engine.tick()
            await state.engine.drain()
            return transitions

        assert client.portal.call(drive) == [Transition("pressureOut_valve", True)]

        body = client.get("/status").json()
        assert body["pressureOut_valve"] == "OPEN"
        assert body["Pressure"]["value"] == 9.0
        assert body["Pressure"]["status"] == "OK"
