"""Telemetry ingestion, valve control loop and status API for temperature/pressure rigs."""
from __future__ import annotations

__version__ = "0.1.0"
