"""
Telemetry sink — aggregate policy metrics.

Same contract as the audit log: fire-and-forget, failure never affects
the evaluation. Events carry metadata only (tool, decision, risk level,
per-decision counters), never argument contents.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class TelemetryService(ABC):
    """Interface for emitting telemetry events."""

    @abstractmethod
    def emit(self, event: dict[str, Any]) -> None:
        """Emit one event. Failure must not raise."""
        ...


class DisabledTelemetry(TelemetryService):
    """No-op sink used when telemetry is disabled (the default)."""

    def emit(self, event: dict[str, Any]) -> None:
        pass


class JsonlTelemetrySink(TelemetryService):
    """Appends events to a local JSONL file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def emit(self, event: dict[str, Any]) -> None:
        try:
            line = json.dumps(event, default=str, sort_keys=True)
            with self._lock:
                self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Telemetry emit to %s failed: %s", self.path, exc)
