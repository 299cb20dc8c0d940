"""Entity records, telemetry messages and alerts."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Liveness(str, enum.Enum):
    OK = "OK"
    FAILED = "FAILED"


class Origin(str, enum.Enum):
    """Which writer produced a record. Informational only."""

    INGEST = "ingest"
    CONTROL = "control"


class SensorRecord(BaseModel):
    key: str
    kind: Literal["Sensor"] = "Sensor"
    value: Optional[float] = None
    unit: Optional[str] = None
    liveness: Optional[Liveness] = None
    updated_at: datetime = Field(default_factory=utcnow)
    origin: Origin = Origin.INGEST
    revision: int = 0


class ActuatorRecord(BaseModel):
    key: str
    kind: Literal["Actuator"] = "Actuator"
    engaged: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
    origin: Origin = Origin.CONTROL
    revision: int = 0


EntityRecord = Annotated[Union[SensorRecord, ActuatorRecord], Field(discriminator="kind")]
entity_record_adapter: TypeAdapter[EntityRecord] = TypeAdapter(EntityRecord)


class SensorData(BaseModel):
    """A numeric reading received on ``<prefix>/<quantity>/data``."""

    type: Literal["data"] = "data"
    quantity: str
    sensor_key: str
    value: float
    unit: str


class LivenessSignal(BaseModel):
    """A presence update received on ``<prefix>/<quantity>/status``."""

    type: Literal["status"] = "status"
    quantity: str
    sensor_key: str
    unit: str
    online: bool

    @property
    def liveness(self) -> Liveness:
        return Liveness.OK if self.online else Liveness.FAILED


TelemetryMessage = Annotated[Union[SensorData, LivenessSignal], Field(discriminator="type")]


class Alert(BaseModel):
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
