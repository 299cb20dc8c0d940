"""In-memory mirror of the latest readings and valve positions seen by one control engine."""
from __future__ import annotations

from typing import Dict, Optional


class LiveControlState:
    """Latest sensor values and actuator flags.

    Readings are written by the ingestion handler; actuator flags only by the
    control engine that owns this instance. Nothing here is loaded from the
    store, so a fresh instance knows nothing until telemetry arrives.
    """

    def __init__(self) -> None:
        self._readings: Dict[str, float] = {}
        self._actuators: Dict[str, bool] = {}

    def record_reading(self, sensor_key: str, value: float) -> None:
        self._readings[sensor_key] = float(value)

    def reading(self, sensor_key: str) -> Optional[float]:
        return self._readings.get(sensor_key)

    def is_engaged(self, actuator_key: str) -> bool:
        return self._actuators.get(actuator_key, False)

    def set_engaged(self, actuator_key: str, engaged: bool) -> None:
        self._actuators[actuator_key] = bool(engaged)
