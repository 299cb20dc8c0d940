"""Error taxonomy shared by the ingestion path, control engine and query surface."""
from __future__ import annotations

from typing import Optional


class ControlError(Exception):
    """Base class for every error raised by ptcontrol."""


class ParseError(ControlError):
    """A telemetry message could not be turned into a known message type."""

    def __init__(self, message: str, *, topic: Optional[str] = None) -> None:
        super().__init__(message)
        self.topic = topic


class StoreError(ControlError):
    """Base class for state store failures."""


class StoreWriteError(StoreError):
    """An upsert against the state store failed."""

    def __init__(self, message: str, *, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class StoreReadError(StoreError):
    """Reading the latest records from the state store failed."""
