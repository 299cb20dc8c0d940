"""Runtime configuration for the control service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class QuantityConfig(BaseModel):
    """One measured quantity, its thresholds and the valve pair that corrects it."""

    name: str = Field(description="Topic segment, e.g. temperature -> sensors/temperature/data")
    sensor_key: str = Field(description="Entity key used for the sensor record, e.g. Temperature")
    unit: str = Field(description="Unit stored alongside readings")
    alert_unit: str = Field(description="Unit suffix used in alert messages")
    minimum: float = Field(description="Readings strictly below this engage the low actuator")
    maximum: float = Field(description="Readings strictly above this engage the high actuator")
    low_actuator: str = Field(description="Actuator key engaged when the reading is too low")
    high_actuator: str = Field(description="Actuator key engaged when the reading is too high")
    low_label: str = Field(description="Human readable name of the low actuator")
    high_label: str = Field(description="Human readable name of the high actuator")

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.minimum >= self.maximum:
            raise ValueError(f"{self.name}: minimum must be below maximum")
        if self.low_actuator == self.high_actuator:
            raise ValueError(f"{self.name}: low and high actuators must differ")
        return self

    @property
    def actuators(self) -> tuple[str, str]:
        return self.low_actuator, self.high_actuator


def _default_quantities() -> List[QuantityConfig]:
    return [
        QuantityConfig(
            name="temperature",
            sensor_key="Temperature",
            unit="C",
            alert_unit="°C",
            minimum=15.0,
            maximum=95.0,
            low_actuator="heat_valve",
            high_actuator="cool_valve",
            low_label="Heating valve",
            high_label="Cooling valve",
        ),
        QuantityConfig(
            name="pressure",
            sensor_key="Pressure",
            unit="bar",
            alert_unit=" atm",
            minimum=2.1,
            maximum=8.1,
            low_actuator="pressureIn_valve",
            high_actuator="pressureOut_valve",
            low_label="Pressure IN valve",
            high_label="Pressure OUT valve",
        ),
    ]


class Settings(BaseSettings):
    """Environment driven settings; defaults match a single-host lab rig."""

    service_name: str = "pt-control"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://127.0.0.1:4317"
    otel_exporter_otlp_headers: Optional[str] = None
    otel_sample_ratio: float = 1.0

    mqtt_url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: str = Field(default="pt_controller_001", description="MQTT client identifier")
    mqtt_qos: int = Field(default=1, ge=0, le=2)
    mqtt_reconnect_seconds: float = Field(default=5.0, gt=0)
    topic_prefix: str = "sensors"

    store_backend: Literal["sqlite", "memory"] = "sqlite"
    store_path: str = "storage/pt_state.db"
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    ingest_enabled: bool = True
    control_enabled: bool = True
    control_interval_seconds: float = 10.0
    quantities: List[QuantityConfig] = Field(default_factory=_default_quantities)

    alert_capacity: int = Field(default=100, ge=1)
    alert_query_limit: int = Field(default=3, ge=1)

    http_host: str = "0.0.0.0"
    http_port: int = 5000
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="PT_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("control_interval_seconds")
    @classmethod
    def _clamp_control_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="control_interval_seconds")

    @model_validator(mode="after")
    def _check_keys(self):
        seen: set[str] = set()
        for quantity in self.quantities:
            for key in (quantity.sensor_key, *quantity.actuators):
                if key in seen:
                    raise ValueError(f"Entity key {key!r} is configured more than once")
                seen.add(key)
        if self.alert_query_limit > self.alert_capacity:
            self.alert_query_limit = self.alert_capacity
        return self

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883

    @property
    def store_file(self) -> Path:
        return Path(self.store_path)

    def data_topic(self, quantity: QuantityConfig) -> str:
        return f"{self.topic_prefix}/{quantity.name}/data"

    def status_topic(self, quantity: QuantityConfig) -> str:
        return f"{self.topic_prefix}/{quantity.name}/status"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
