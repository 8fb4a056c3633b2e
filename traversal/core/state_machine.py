from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, TypeVar

from traversal.config.schema import BootstrapConfig, SettleConfig, TimeoutConfig
from traversal.core.actions import ActionExecutor
from traversal.core.context import OrchestratorState, RunContext, TransitionResult
from traversal.core.decider import DecisionEngine, VisionService
from traversal.core.device import DeviceDriver
from traversal.core.exceptions import (
    ActionExecutionError,
    BootstrapFailedError,
    DecisionClientError,
    TransitionTimeoutError,
)
from traversal.core.fingerprint import ScreenFingerprinter
from traversal.core.models import ActionPlan, RunStats, ScreenCapture, utc_now
from traversal.core.recovery import RecoveryExecutor, select_strategy

log = logging.getLogger(__name__)

T = TypeVar("T")
Handler = Callable[[RunContext, float], Awaitable[TransitionResult]]

REASON_TIMEOUT = "timeout_reached"
REASON_MAX_ACTIONS = "coverage_completed"
REASON_QUEUE_EMPTY = "queue_empty"


class TraversalStateMachine:
    """Advances one run context a single state at a time.

    Every transition runs under a deadline: the long bootstrap budget for BOOTSTRAPPING and
    the short transition budget for every other state. Blocking driver, model and locator
    calls run in worker threads; when the deadline passes the awaiting transition fails with
    ``TransitionTimeoutError`` while the worker is left to finish and its result is ignored.
    Any handler failure routes the run to RECOVERING, and only a failing recovery ends it.
    """

    def __init__(
        self,
        driver: DeviceDriver,
        decision_engine: DecisionEngine,
        executor: ActionExecutor,
        recovery: RecoveryExecutor,
        fingerprinter: ScreenFingerprinter,
        *,
        timeouts: TimeoutConfig | None = None,
        bootstrap: BootstrapConfig | None = None,
        settle: SettleConfig | None = None,
        vision_service: VisionService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.decision_engine = decision_engine
        self.executor = executor
        self.recovery = recovery
        self.fingerprinter = fingerprinter
        self.timeouts = timeouts or TimeoutConfig()
        self.bootstrap = bootstrap or BootstrapConfig()
        self.settle = settle or SettleConfig()
        self.vision_service = vision_service
        self.clock = clock
        self._handlers: dict[OrchestratorState, Handler] = {
            OrchestratorState.IDLE: self._on_idle,
            OrchestratorState.BOOTSTRAPPING: self._on_bootstrapping,
            OrchestratorState.TRAVERSING: self._on_traversing,
            OrchestratorState.INSPECTING: self._on_inspecting,
            OrchestratorState.EXECUTING: self._on_executing,
            OrchestratorState.VERIFYING: self._on_verifying,
            OrchestratorState.RECOVERING: self._on_recovering,
            OrchestratorState.TERMINATED: self._on_terminated,
        }

    async def transition(self, context: RunContext) -> TransitionResult:
        from_state = context.state
        handler = self._handlers[from_state]
        budget = (
            self.timeouts.bootstrap_seconds
            if from_state is OrchestratorState.BOOTSTRAPPING
            else self.timeouts.transition_seconds
        )
        deadline = asyncio.get_running_loop().time() + budget
        try:
            result = await handler(context, deadline)
        except Exception as exc:  # noqa: BLE001 - every handler failure is routed to recovery.
            code = _error_code(exc)
            message = f"{type(exc).__name__}: {exc}"
            context.fail(code, message)
            log.warning("Run %s transition from %s failed (%s): %s", context.run_id, from_state.value, code, exc)
            result = TransitionResult(
                from_state=from_state,
                to_state=OrchestratorState.RECOVERING,
                success=False,
                error=message,
                data={"errorCode": code},
            )

        if result.to_state is OrchestratorState.TERMINATED and from_state is not OrchestratorState.TERMINATED:
            context.termination_reason = result.data.get("reason", context.termination_reason)
            if not result.success:
                context.failure_reason = result.error
        context.state = result.to_state
        log.debug("Run %s: %s -> %s", context.run_id, from_state.value, result.to_state.value)
        return result

    async def _on_idle(self, context: RunContext, deadline: float) -> TransitionResult:
        context.stats = RunStats(started_at=self.clock())
        return self._result(context, OrchestratorState.BOOTSTRAPPING)

    async def _on_bootstrapping(self, context: RunContext, deadline: float) -> TransitionResult:
        last_error: Exception | None = None
        for attempt in range(1, self.bootstrap.max_attempts + 1):
            session = None
            try:
                session = await self._call(deadline, self.driver.create_session, context.device_id, context.app_package)
                await self._call(deadline, self.driver.launch_app, session, context.app_package)
                context.session = session
                log.info(
                    "Run %s bootstrapped session %s on %s (attempt %s)",
                    context.run_id,
                    session.session_id,
                    context.device_id,
                    attempt,
                )
                return self._result(
                    context,
                    OrchestratorState.INSPECTING,
                    data={"sessionId": session.session_id, "attempts": attempt},
                )
            except TransitionTimeoutError:
                # the session never reaches the context, so nobody else would close it
                if session is not None:
                    self.driver.close_session(session)
                raise
            except Exception as exc:  # noqa: BLE001 - retried until the attempt ceiling.
                last_error = exc
                log.warning("Run %s bootstrap attempt %s failed: %s", context.run_id, attempt, exc)
                if session is not None:
                    self.driver.close_session(session)
            if attempt < self.bootstrap.max_attempts:
                await self._sleep(deadline, attempt * self.bootstrap.backoff_seconds)
        raise BootstrapFailedError(
            f"Device session could not be established after {self.bootstrap.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _on_traversing(self, context: RunContext, deadline: float) -> TransitionResult:
        reason = self._termination_reason(context)
        if reason is not None:
            log.info("Run %s terminating: %s", context.run_id, reason)
            return self._result(context, OrchestratorState.TERMINATED, data={"reason": reason})

        item = context.queues.dequeue()
        if item is None:
            log.info("Run %s terminating: action queues exhausted", context.run_id)
            return self._result(context, OrchestratorState.TERMINATED, data={"reason": REASON_QUEUE_EMPTY})

        priority, action = item
        rule = self._blacklist_match(action, context.coverage.blacklist_paths)
        if rule is not None:
            log.debug("Run %s dropped blacklisted action %s (rule %s)", context.run_id, action.label, rule)
            return self._result(
                context,
                OrchestratorState.TRAVERSING,
                data={"skipped": action.label, "rule": rule},
            )

        context.pending_action = action
        context.current_depth = action.depth
        return self._result(
            context,
            OrchestratorState.INSPECTING,
            data={"nextAction": action.to_payload(), "priority": priority.value},
        )

    async def _on_inspecting(self, context: RunContext, deadline: float) -> TransitionResult:
        capture = await self._capture(context, deadline, with_vision=True)
        signature = capture.signature.signature
        is_new = context.graph.observe(signature)
        context.current_signature = signature
        data = {"signature": signature, "visits": context.graph.visits(signature)}

        if not is_new:
            context.pending_action = None
            return self._result(context, OrchestratorState.TRAVERSING, data={**data, "duplicate": True})

        context.stats.coverage_screens += 1
        context.current_capture = capture
        return self._result(context, OrchestratorState.EXECUTING, data=data)

    async def _on_executing(self, context: RunContext, deadline: float) -> TransitionResult:
        intent = context.pending_action
        context.pending_action = None
        try:
            decision = await self._call(deadline, self.decision_engine.decide, context, intent)
            action = decision.action
            if action is None:
                context.stats.failed_actions += 1
                context.fail(decision.error_code or "POLICY_REJECTED", decision.reason or "decision rejected")
                return self._result(
                    context,
                    OrchestratorState.RECOVERING,
                    success=False,
                    error=f"decision rejected without fallback: {decision.reason}",
                    data={"violatedField": decision.violated_field},
                )
            if context.session is None:
                raise ActionExecutionError("No active device session")

            context.stats.total_actions += 1
            context.last_action = action
            outcome = await self._call(
                deadline,
                self.executor.execute,
                context.run_id,
                context.session,
                action,
                context.current_capture,
            )
        except Exception:
            context.stats.failed_actions += 1
            raise

        context.record_action(action, outcome.success, utc_now().isoformat())
        data: dict[str, Any] = {"action": action.to_payload(), "fallbackUsed": decision.fallback_used}
        if not outcome.success:
            context.stats.failed_actions += 1
            context.fail(outcome.error_code or "EXECUTION_FAILED", outcome.note or "action failed")
            return self._result(
                context,
                OrchestratorState.RECOVERING,
                success=False,
                error=f"action_execution_failed: {outcome.note}",
                data=data,
            )

        context.stats.successful_actions += 1
        if outcome.candidate_id:
            data["candidateId"] = outcome.candidate_id
        return self._result(context, OrchestratorState.VERIFYING, data=data)

    async def _on_verifying(self, context: RunContext, deadline: float) -> TransitionResult:
        await self._sleep(deadline, self.settle.verify_seconds)
        capture = await self._capture(context, deadline, with_vision=False)
        # not an observation: visits are counted by INSPECTING only
        after = capture.signature.signature
        action = context.last_action
        data: dict[str, Any] = {"signature": after}

        if action is not None:
            if context.current_signature is not None:
                context.graph.add_edge(context.current_signature, after, action.label)
            continuation = replace(
                action,
                target_signature=after,
                depth=context.current_depth + 1,
                source="continuation",
                description=f"explore after {action.label}",
            )
            max_depth = context.coverage.max_depth
            if max_depth is not None and continuation.depth > max_depth:
                data["depthLimited"] = True
            else:
                data["enqueued"] = context.queues.route(continuation, context.graph).value
        context.current_signature = after
        return self._result(context, OrchestratorState.TRAVERSING, data=data)

    async def _on_recovering(self, context: RunContext, deadline: float) -> TransitionResult:
        strategy = select_strategy(context.stats.failed_actions)
        log.info(
            "Run %s recovering with %s after %s failed actions",
            context.run_id,
            strategy.value,
            context.stats.failed_actions,
        )
        try:
            await self._call(deadline, self.recovery.execute, strategy, context.session, context.app_package)
        except Exception as exc:  # noqa: BLE001 - a failing strategy terminates the run.
            last_action = context.last_action.label if context.last_action else "none"
            reason = (
                f"recovery_failed: {strategy.value} failed ({exc}); "
                f"last_action={last_action}; last_error={context.last_error_code or 'none'}"
            )
            log.error("Run %s terminated: %s", context.run_id, reason)
            return self._result(
                context,
                OrchestratorState.TERMINATED,
                success=False,
                error=reason,
                data={"reason": "recovery_failed", "recoveryStrategy": strategy.value},
            )

        context.current_signature = None
        context.current_capture = None
        return self._result(context, OrchestratorState.TRAVERSING, data={"recoveryStrategy": strategy.value})

    async def _on_terminated(self, context: RunContext, deadline: float) -> TransitionResult:
        return self._result(context, OrchestratorState.TERMINATED)

    async def _capture(self, context: RunContext, deadline: float, *, with_vision: bool) -> ScreenCapture:
        session = context.session
        if session is None:
            raise ActionExecutionError("No active device session")
        screenshot = await self._call(deadline, self.driver.take_screenshot, session)
        page_source = await self._call(deadline, self.driver.get_page_source, session)
        vision: tuple = ()
        if with_vision and self.vision_service is not None:
            try:
                vision = tuple(await self._call(deadline, self.vision_service.analyze, screenshot))
            except TransitionTimeoutError:
                raise
            except Exception as exc:  # noqa: BLE001 - vision is optional context.
                log.warning("Run %s vision analysis skipped: %s", context.run_id, exc)
        return await self._call(deadline, self.fingerprinter.capture, context.run_id, screenshot, page_source, vision)

    def _termination_reason(self, context: RunContext) -> str | None:
        coverage = context.coverage
        elapsed = self.clock() - context.stats.started_at
        if coverage.timeout_seconds is not None and elapsed >= coverage.timeout_seconds:
            return REASON_TIMEOUT
        if coverage.max_actions is not None and context.stats.total_actions >= coverage.max_actions:
            return REASON_MAX_ACTIONS
        return None

    @staticmethod
    def _blacklist_match(action: ActionPlan, rules: list[str]) -> str | None:
        haystacks = [value.lower() for value in (action.description, action.target_text, action.label) if value]
        for rule in rules:
            pattern = rule.lower()
            for value in haystacks:
                if fnmatch.fnmatch(value, pattern) or pattern in value:
                    return rule
        return None

    async def _call(self, deadline: float, func: Callable[..., T], *args: Any) -> T:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TransitionTimeoutError(f"{_name(func)} was not started: transition budget exhausted")
        task = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            # shield keeps the worker result alive; the call itself cannot be interrupted
            return await asyncio.wait_for(asyncio.shield(task), remaining)
        except asyncio.TimeoutError as exc:
            raise TransitionTimeoutError(f"{_name(func)} exceeded the transition budget") from exc

    async def _sleep(self, deadline: float, seconds: float) -> None:
        if seconds <= 0:
            return
        remaining = deadline - asyncio.get_running_loop().time()
        if seconds > remaining:
            raise TransitionTimeoutError(f"settle delay of {seconds}s exceeds the remaining transition budget")
        await asyncio.sleep(seconds)

    @staticmethod
    def _result(
        context: RunContext,
        to_state: OrchestratorState,
        *,
        success: bool = True,
        error: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> TransitionResult:
        return TransitionResult(
            from_state=context.state,
            to_state=to_state,
            success=success,
            error=error,
            data=data or {},
        )


def _error_code(exc: Exception) -> str:
    if isinstance(exc, BootstrapFailedError):
        return "BOOTSTRAP_FAILED"
    if isinstance(exc, TransitionTimeoutError):
        return "TRANSITION_TIMEOUT"
    if isinstance(exc, DecisionClientError):
        return "MODEL_ERROR"
    if isinstance(exc, ActionExecutionError):
        return "EXECUTION_FAILED"
    return "INTERNAL_ERROR"


def _name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", getattr(func, "__name__", repr(func)))
