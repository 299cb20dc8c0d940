"""Fixed-cadence threshold control loop for valve pairs.

Each controlled quantity has a low actuator (engaged when the reading drops
below ``minimum``) and a high actuator (engaged above ``maximum``). Every tick
evaluates, per quantity and in configuration order:

1. no reading yet: nothing happens;
2. reading within ``[minimum, maximum]``: any engaged actuator is released;
3. too high and the high actuator is released: engage it, release the low one;
4. too low and the low actuator is released: engage it, release the high one;
5. too high and the high actuator was already engaged: raise an alert;
6. too low and the low actuator was already engaged: raise an alert.

A tick that engages an actuator never alerts for that quantity; the alert
fires on every following tick while the reading stays out of range.

Decisions update the live state immediately. Persistence runs in background
tasks whose failures are logged and never roll the decision back. Writes for
one actuator key are chained so they reach the store in decision order.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

from ptcontrol.config import QuantityConfig, Settings
from ptcontrol.exceptions import StoreWriteError
from ptcontrol.models import Origin, utcnow
from ptcontrol.observability import traced
from ptcontrol.services.alerts import AlertBuffer
from ptcontrol.services.live_state import LiveControlState
from ptcontrol.services.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    actuator: str
    engaged: bool


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _state_label(engaged: bool) -> str:
    return "OPEN" if engaged else "CLOSED"


class ControlEngine:
    """Owns a :class:`LiveControlState` and drives actuators from it."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[StateStore],
        alerts: AlertBuffer,
        live_state: Optional[LiveControlState] = None,
        *,
        quantities: Optional[Sequence[QuantityConfig]] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.alerts = alerts
        self.state = live_state if live_state is not None else LiveControlState()
        self.quantities: List[QuantityConfig] = list(quantities if quantities is not None else settings.quantities)
        self.interval_seconds = float(interval_seconds or settings.control_interval_seconds)
        self.tick_count = 0
        self.write_failures = 0
        self._last_write: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="control-loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.drain()

    async def drain(self) -> None:
        """Wait until every scheduled actuator write has finished."""

        while self._inflight:
            await asyncio.wait(set(self._inflight))

    async def _run(self) -> None:
        logger.info("Control loop running every %ss", self.interval_seconds)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                self.tick()

    def tick(self) -> List[Transition]:
        """Evaluate every quantity once and return the actuator transitions made."""

        transitions: List[Transition] = []
        for quantity in self.quantities:
            try:
                with traced("control.evaluate", quantity=quantity.name):
                    transitions.extend(self.evaluate(quantity))
            except Exception:
                logger.exception("Control evaluation failed for %s", quantity.name)
        self.tick_count += 1
        return transitions

    def evaluate(self, quantity: QuantityConfig) -> List[Transition]:
        value = self.state.reading(quantity.sensor_key)
        if value is None:
            return []

        too_high = value > quantity.maximum
        too_low = value < quantity.minimum
        low, high = quantity.low_actuator, quantity.high_actuator
        transitions: List[Transition] = []

        if not too_high and not too_low:
            for actuator in (low, high):
                if self.state.is_engaged(actuator):
                    transitions.append(self._actuate(actuator, False))
            return transitions

        if too_high and not self.state.is_engaged(high):
            transitions.append(self._actuate(high, True))
            if self.state.is_engaged(low):
                transitions.append(self._actuate(low, False))
        elif too_low and not self.state.is_engaged(low):
            transitions.append(self._actuate(low, True))
            if self.state.is_engaged(high):
                transitions.append(self._actuate(high, False))
        elif too_high:
            self.alerts.append(
                f"{quantity.sensor_key} is too high: {_format_value(value)}{quantity.alert_unit}. "
                f"{quantity.high_label} is OPEN."
            )
        else:
            self.alerts.append(
                f"{quantity.sensor_key} is too low: {_format_value(value)}{quantity.alert_unit}. "
                f"{quantity.low_label} is OPEN."
            )
        return transitions

    def _actuate(self, actuator: str, engaged: bool) -> Transition:
        self.state.set_engaged(actuator, engaged)
        logger.info("Valve %s -> %s", actuator, _state_label(engaged))
        self._schedule_write(actuator, engaged)
        return Transition(actuator=actuator, engaged=engaged)

    def _schedule_write(self, actuator: str, engaged: bool) -> None:
        if self.store is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; %s state not persisted", actuator)
            return
        previous = self._last_write.get(actuator)
        task = asyncio.create_task(
            self._write_actuator(actuator, engaged, previous),
            name=f"actuator-write-{actuator}",
        )
        self._last_write[actuator] = task
        self._inflight.add(task)
        task.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        for actuator, last in list(self._last_write.items()):
            if last is task:
                del self._last_write[actuator]

    async def _write_actuator(self, actuator: str, engaged: bool, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        fields = {
            "engaged": engaged,
            "updated_at": utcnow(),
            "origin": Origin.CONTROL,
        }
        try:
            await self.store.upsert(actuator, "Actuator", fields)
        except StoreWriteError as exc:
            self.write_failures += 1
            logger.error("Valve command failed for %s: %s", actuator, exc)
            return
        logger.debug("Persisted %s -> %s", actuator, _state_label(engaged))
