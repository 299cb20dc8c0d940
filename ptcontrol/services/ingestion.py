"""Subscribe to sensor telemetry and liveness topics and record what arrives."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Dict, Iterable, Optional

from aiomqtt import Client, MqttError

from ptcontrol.config import QuantityConfig, Settings
from ptcontrol.exceptions import ParseError, StoreWriteError
from ptcontrol.models import Liveness, LivenessSignal, Origin, SensorData, TelemetryMessage, utcnow
from ptcontrol.observability import traced
from ptcontrol.services.live_state import LiveControlState
from ptcontrol.services.state_store import StateStore

logger = logging.getLogger(__name__)

ONLINE_PAYLOAD = "ONLINE"


def parse_message(
    topic: str,
    payload: bytes | str,
    routes: Dict[str, tuple[str, QuantityConfig]],
) -> TelemetryMessage:
    """Validate one MQTT message into a :class:`SensorData` or :class:`LivenessSignal`.

    ``routes`` maps a topic to ``("data" | "status", quantity)``. Raises
    :class:`ParseError` for unknown topics and unusable payloads.
    """

    route = routes.get(topic)
    if route is None:
        raise ParseError(f"Unknown topic {topic}", topic=topic)
    channel, quantity = route
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
    text = text.strip()
    if channel == "status":
        return LivenessSignal(
            quantity=quantity.name,
            sensor_key=quantity.sensor_key,
            unit=quantity.unit,
            online=text.upper() == ONLINE_PAYLOAD,
        )
    try:
        value = float(text)
    except ValueError as exc:
        raise ParseError(f"Invalid {quantity.name} value: {text!r}", topic=topic) from exc
    if not math.isfinite(value):
        raise ParseError(f"Non-finite {quantity.name} value: {text!r}", topic=topic)
    return SensorData(
        quantity=quantity.name,
        sensor_key=quantity.sensor_key,
        value=value,
        unit=quantity.unit,
    )


class TelemetryIngestor:
    """Feed MQTT telemetry into the state store and, optionally, a live control state.

    With ``persist=False`` the ingestor only mirrors readings into
    ``live_state`` (a controller process that leaves persistence to a
    separate ingestion process). With ``live_state=None`` it only persists.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[StateStore],
        live_state: Optional[LiveControlState] = None,
        *,
        persist: bool = True,
    ) -> None:
        self.settings = settings
        self.store = store
        self.live_state = live_state
        self.persist = bool(persist and store is not None)
        self.routes: Dict[str, tuple[str, QuantityConfig]] = {}
        for quantity in settings.quantities:
            self.routes[settings.data_topic(quantity)] = ("data", quantity)
            self.routes[settings.status_topic(quantity)] = ("status", quantity)
        self.connected = False
        self.last_error: Optional[str] = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="telemetry-ingestor")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def topics(self) -> Iterable[str]:
        return list(self.routes)

    async def _run(self) -> None:
        retry_delay = self.settings.mqtt_reconnect_seconds
        while not self._stop.is_set():
            try:
                logger.info("Connecting to MQTT broker %s:%s", self.settings.mqtt_host, self.settings.mqtt_port)
                async with Client(
                    self.settings.mqtt_host,
                    port=self.settings.mqtt_port,
                    username=self.settings.mqtt_username,
                    password=self.settings.mqtt_password,
                    identifier=self.settings.mqtt_client_id,
                ) as client:
                    self.connected = True
                    self.last_error = None
                    try:
                        await self._listen(client)
                    finally:
                        self.connected = False
            except asyncio.CancelledError:
                break
            except MqttError as exc:
                self.last_error = str(exc)
                logger.warning("MQTT ingest error %s; retrying in %ss", exc, retry_delay)
                await asyncio.sleep(retry_delay)
            except Exception:
                logger.exception("Unhandled error in telemetry ingestor")
                await asyncio.sleep(retry_delay)

    async def _listen(self, client: Client) -> None:
        for topic in self.topics():
            await client.subscribe(topic, qos=self.settings.mqtt_qos)
            logger.info("Subscribed to %s", topic)
        async for message in client.messages:
            if self._stop.is_set():
                break
            topic = getattr(message.topic, "value", None)
            if topic is None:
                topic = str(message.topic)
            with traced("telemetry.message", topic=topic):
                await self.handle_message(topic, message.payload)

    async def handle_message(self, topic: str, payload: bytes | str) -> bool:
        """Process one message; returns ``True`` when it was accepted."""

        try:
            message = parse_message(topic, payload, self.routes)
        except ParseError as exc:
            logger.warning("Discarding telemetry on %s: %s", topic, exc)
            return False

        if isinstance(message, SensorData):
            if self.live_state is not None:
                self.live_state.record_reading(message.sensor_key, message.value)
            logger.info("Ingested %s = %s %s", message.sensor_key, message.value, message.unit)
            fields: Dict[str, object] = {
                "value": message.value,
                "unit": message.unit,
                "liveness": Liveness.OK,
                "updated_at": utcnow(),
                "origin": Origin.INGEST,
            }
        else:
            logger.info("%s liveness: %s", message.sensor_key, message.liveness.value)
            fields = {
                "liveness": message.liveness,
                "updated_at": utcnow(),
                "origin": Origin.INGEST,
            }

        if self.persist:
            try:
                await self.store.upsert(
                    message.sensor_key,
                    "Sensor",
                    fields,
                    on_insert={"unit": message.unit},
                )
            except StoreWriteError as exc:
                logger.error("Store write failed for %s: %s", message.sensor_key, exc)
        return True

