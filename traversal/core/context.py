from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from traversal.config.schema import CoverageConfig
from traversal.core.device import DeviceSession
from traversal.core.models import ActionPlan, ActionType, RunStats, ScreenCapture
from traversal.core.visited import ActionQueues, VisitedGraph


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    BOOTSTRAPPING = "BOOTSTRAPPING"
    TRAVERSING = "TRAVERSING"
    INSPECTING = "INSPECTING"
    EXECUTING = "EXECUTING"
    VERIFYING = "VERIFYING"
    RECOVERING = "RECOVERING"
    TERMINATED = "TERMINATED"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    from_state: OrchestratorState
    to_state: OrchestratorState
    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class HistoryEntry:
    action_type: str
    description: str
    success: bool
    timestamp: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "actionType": self.action_type,
            "description": self.description,
            "success": self.success,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class RunContext:
    """All mutable state of one traversal run, owned by the state machine driving it."""

    run_id: str
    task_id: str
    device_id: str
    app_package: str
    app_version_id: str = ""
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    allowed_actions: list[ActionType] = field(default_factory=list)
    state: OrchestratorState = OrchestratorState.IDLE
    session: DeviceSession | None = None
    graph: VisitedGraph = field(default_factory=VisitedGraph)
    queues: ActionQueues = field(default_factory=ActionQueues)
    stats: RunStats = field(default_factory=RunStats)
    current_capture: ScreenCapture | None = None
    current_signature: str | None = None
    pending_action: ActionPlan | None = None
    current_depth: int = 0
    last_action: ActionPlan | None = None
    last_error: str | None = None
    last_error_code: str | None = None
    action_history: list[HistoryEntry] = field(default_factory=list)
    termination_reason: str | None = None
    failure_reason: str | None = None

    @property
    def terminated(self) -> bool:
        return self.state is OrchestratorState.TERMINATED

    def record_action(self, action: ActionPlan, success: bool, timestamp: str) -> None:
        self.action_history.append(
            HistoryEntry(
                action_type=action.action_type.value,
                description=action.description or action.label,
                success=success,
                timestamp=timestamp,
            )
        )

    def recent_history(self, size: int) -> list[dict[str, Any]]:
        return [entry.to_payload() for entry in self.action_history[-size:]] if size > 0 else []

    def fail(self, code: str, message: str) -> None:
        self.last_error_code = code
        self.last_error = message
