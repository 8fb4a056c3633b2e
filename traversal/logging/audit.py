from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from traversal.core.models import TransitionEvent, ValidationRecord


@dataclass(slots=True)
class DecisionRecord:
    run_id: str
    provider: str
    model: str | None
    latency_ms: float
    request_payload: dict[str, Any]
    response_payload: Any
    rejected: bool
    reason: str | None = None
    violated_field: str | None = None
    error_code: str | None = None
    final_action: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)


class TraversalAuditLogger:
    """Persists transition events, decision calls and locator validation attempts as JSONL."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.transitions_path = self.root / "transitions.jsonl"
        self.decisions_path = self.root / "decisions.jsonl"
        self.validations_path = self.root / "validations.jsonl"
        self._lock = threading.Lock()

    def write_transition(self, event: TransitionEvent) -> None:
        self._append(
            self.transitions_path,
            {
                "run_id": event.run_id,
                "from": event.from_state,
                "to": event.to_state,
                "success": event.success,
                "error": event.error,
                "data": event.data,
                "occurred_at": event.occurred_at,
            },
        )

    def write_decision(self, record: DecisionRecord) -> None:
        self._append(
            self.decisions_path,
            {
                "run_id": record.run_id,
                "provider": record.provider,
                "model": record.model,
                "latency_ms": round(record.latency_ms, 2),
                "request_payload": record.request_payload,
                "response_payload": record.response_payload,
                "safety_flags": {
                    "rejected": record.rejected,
                    "reason": record.reason,
                    "violated_field": record.violated_field,
                },
                "usage": record.usage,
                "error_code": record.error_code,
                "final_action": record.final_action,
            },
        )

    def write_validation(self, record: ValidationRecord) -> None:
        self._append(
            self.validations_path,
            {
                "candidate_id": record.candidate_id,
                "run_id": record.run_id,
                "status": record.status.value,
                "latency_ms": round(record.latency_ms, 2),
                "attempted_at": record.attempted_at.isoformat(),
                "screenshot_path": record.screenshot_path,
                "note": record.note,
            },
        )

    def read_transitions(self) -> list[dict[str, Any]]:
        return self._read(self.transitions_path)

    def read_decisions(self) -> list[dict[str, Any]]:
        return self._read(self.decisions_path)

    def read_validations(self) -> list[dict[str, Any]]:
        return self._read(self.validations_path)

    def _append(self, path: Path, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False, default=str)
        with self._lock, path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    @staticmethod
    def _read(path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
