from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

POLICY_BLOCKED = "POLICY_BLOCKED"
LOCATOR_FAILURE = "LOCATOR_FAILURE"
RUN_FAILED = "RUN_FAILED"


class AlertSink(ABC):
    """Destination for operator-facing alerts."""

    @abstractmethod
    def raise_alert(self, kind: str, severity: str, message: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    def raise_alert(self, kind: str, severity: str, message: str, payload: dict[str, Any]) -> None:
        log.warning("[%s/%s] %s %s", kind, severity, message, json.dumps(payload, ensure_ascii=False, default=str))


class JsonlAlertSink(AlertSink):
    """Appends alerts to ``alerts.jsonl`` under the artifacts root."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.path = Path(root) / "alerts.jsonl"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def raise_alert(self, kind: str, severity: str, message: str, payload: dict[str, Any]) -> None:
        line = json.dumps(
            {
                "alert_type": kind,
                "severity": severity,
                "message": message,
                "payload": payload,
                "status": "OPEN",
                "triggered_at": datetime.now(UTC).isoformat(),
            },
            ensure_ascii=False,
            default=str,
        )
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def emit_alert(sink: AlertSink | None, kind: str, severity: str, message: str, payload: dict[str, Any]) -> None:
    """Fire-and-forget delivery; a failing sink never aborts the caller."""

    if sink is None:
        return
    try:
        sink.raise_alert(kind, severity, message, payload)
    except Exception as exc:  # noqa: BLE001 - alert delivery must not break the run.
        log.warning("Alert sink %s failed for %s: %s", type(sink).__name__, kind, exc)
