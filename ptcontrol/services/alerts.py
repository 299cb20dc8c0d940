"""Bounded in-process log of recent control alerts."""
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Optional

from ptcontrol.models import Alert

logger = logging.getLogger(__name__)


class AlertBuffer:
    """Keeps the newest ``capacity`` alerts, oldest first."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity)
        self._alerts: Deque[Alert] = deque(maxlen=self.capacity)

    def __len__(self) -> int:
        return len(self._alerts)

    def append(self, message: str) -> Alert:
        alert = Alert(message=message)
        self._alerts.append(alert)
        logger.warning("Alert raised: %s", message)
        return alert

    def recent(self, limit: Optional[int] = None) -> List[Alert]:
        """Return up to ``limit`` of the newest alerts, most recent last."""

        items = list(self._alerts)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]
