from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Callable

from traversal.config.schema import TaskDefinition, TraversalConfig
from traversal.core.actions import ActionExecutor
from traversal.core.context import OrchestratorState, RunContext, TransitionResult
from traversal.core.decider import DecisionEngine, VisionService
from traversal.core.device import DeviceDriver
from traversal.core.fingerprint import ScreenFingerprinter
from traversal.core.models import ActionPlan, RunResult, RunStatus, TransitionEvent
from traversal.core.recovery import RecoveryExecutor
from traversal.core.reservation import DeviceReservationPool
from traversal.core.state_machine import TraversalStateMachine
from traversal.core.visited import QueuePriority
from traversal.llm.client import DecisionModelClient
from traversal.llm.safety import DecisionSafetyValidator
from traversal.locators.generator import LocatorGenerator
from traversal.locators.validator import LocatorRegistry, LocatorValidator
from traversal.logging.alerts import RUN_FAILED, AlertSink, LoggingAlertSink, emit_alert
from traversal.logging.artifacts import ArtifactManager
from traversal.logging.audit import TraversalAuditLogger

log = logging.getLogger(__name__)

TransitionCallback = Callable[[TransitionEvent], None]


class TraversalRunner:
    """Wires the traversal collaborators together and drives runs to completion."""

    def __init__(
        self,
        config: TraversalConfig,
        driver: DeviceDriver,
        decision_client: DecisionModelClient,
        *,
        alert_sink: AlertSink | None = None,
        reservation_pool: DeviceReservationPool | None = None,
        vision_service: VisionService | None = None,
        artifact_manager: ArtifactManager | None = None,
        audit_logger: TraversalAuditLogger | None = None,
        registry: LocatorRegistry | None = None,
        on_transition: TransitionCallback | None = None,
        max_transitions: int = 10_000,
    ) -> None:
        self.config = config
        self.driver = driver
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.reservation_pool = reservation_pool
        self.artifact_manager = artifact_manager or ArtifactManager(config.artifacts_root)
        self.audit_logger = audit_logger or TraversalAuditLogger(config.artifacts_root)
        self.registry = registry or LocatorRegistry()
        self.on_transition = on_transition
        self.max_transitions = max_transitions

        self.validator = LocatorValidator(
            audit_logger=self.audit_logger,
            alert_sink=self.alert_sink,
            history_window=config.locators.history_window,
            max_attempts=config.locators.max_candidates,
        )
        self.executor = ActionExecutor(
            driver,
            self.validator,
            LocatorGenerator(config.locators.max_candidates, config.locators.historical_threshold),
            self.registry,
            config.locators,
        )
        self.decision_engine = DecisionEngine(
            decision_client,
            DecisionSafetyValidator(config.safety),
            audit_logger=self.audit_logger,
            alert_sink=self.alert_sink,
            history_size=config.decision_model.history_size,
        )
        self.state_machine = TraversalStateMachine(
            driver,
            self.decision_engine,
            self.executor,
            RecoveryExecutor(driver, config.settle),
            ScreenFingerprinter(self.artifact_manager),
            timeouts=config.timeouts,
            bootstrap=config.bootstrap,
            settle=config.settle,
            vision_service=vision_service,
        )

    def run(self, task_id: str, device_id: str) -> RunResult:
        return asyncio.run(self.run_traversal(task_id, device_id))

    async def run_traversal(self, task_id: str, device_id: str) -> RunResult:
        task = self.config.get_task(task_id)
        context = self.create_context(task, device_id)
        log.info("Run %s started for task %s on device %s", context.run_id, task_id, device_id)

        reservation = (
            self.reservation_pool.reserve(device_id, context.run_id)
            if self.reservation_pool is not None
            else contextlib.nullcontext()
        )
        with reservation:
            try:
                await self._drive(context)
            finally:
                if context.session is not None:
                    self.driver.close_session(context.session)
                    context.session = None

        result = self._result(context)
        if result.status is RunStatus.FAILED:
            emit_alert(
                self.alert_sink,
                RUN_FAILED,
                "P1",
                f"Traversal run {context.run_id} failed",
                {"runId": context.run_id, "taskId": task_id, "deviceId": device_id, "reason": result.failure_reason},
            )
        self.artifact_manager.write_run_log(context.run_id, self._summary(context, result))
        log.info(
            "Run %s finished with %s (%s)",
            context.run_id,
            result.status.value,
            result.failure_reason or result.termination_reason,
        )
        return result

    def create_context(self, task: TaskDefinition, device_id: str) -> RunContext:
        context = RunContext(
            run_id=uuid.uuid4().hex,
            task_id=task.task_id,
            device_id=device_id,
            app_package=task.app_package,
            app_version_id=task.app_version_id,
            coverage=task.coverage,
            allowed_actions=list(task.allowed_actions or self.config.safety.allowed_actions),
        )
        for payload in task.seed_actions:
            context.queues.enqueue(ActionPlan.from_payload(payload, source="seed"), QueuePriority.PRIMARY)
        return context

    async def _drive(self, context: RunContext) -> None:
        for _ in range(self.max_transitions):
            if context.terminated:
                return
            result = await self.state_machine.transition(context)
            self._emit(context, result)
        context.failure_reason = f"transition limit of {self.max_transitions} reached in {context.state.value}"
        context.state = OrchestratorState.TERMINATED

    def _emit(self, context: RunContext, result: TransitionResult) -> None:
        event = TransitionEvent(
            run_id=context.run_id,
            from_state=result.from_state.value,
            to_state=result.to_state.value,
            success=result.success,
            error=result.error,
            data=result.data,
        )
        self.audit_logger.write_transition(event)
        if self.on_transition is not None:
            self.on_transition(event)

    @staticmethod
    def _result(context: RunContext) -> RunResult:
        status = RunStatus.FAILED if context.failure_reason else RunStatus.SUCCEEDED
        return RunResult(
            run_id=context.run_id,
            status=status,
            stats=context.stats.to_payload(),
            failure_reason=context.failure_reason,
            termination_reason=context.termination_reason,
        )

    @staticmethod
    def _summary(context: RunContext, result: RunResult) -> str:
        lines = [
            f"run_id={context.run_id}",
            f"task_id={context.task_id}",
            f"device_id={context.device_id}",
            f"status={result.status.value}",
            f"termination_reason={result.termination_reason}",
            f"failure_reason={result.failure_reason}",
        ]
        lines.extend(f"{key}={value}" for key, value in result.stats.items())
        lines.append(f"visited_screens={len(context.graph)}")
        return "\n".join(lines) + "\n"
