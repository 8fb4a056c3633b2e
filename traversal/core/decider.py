from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Iterable

from traversal.core.context import RunContext
from traversal.core.exceptions import MalformedDecisionError
from traversal.core.models import ActionPlan, VisionObservation, navigate_back
from traversal.llm.client import DecisionModelClient
from traversal.llm.safety import DecisionSafetyValidator, SafetyCheckResult, build_alert
from traversal.logging.alerts import POLICY_BLOCKED, AlertSink, emit_alert
from traversal.logging.audit import DecisionRecord, TraversalAuditLogger
from traversal.utils.dom_extract import build_dom_summary

log = logging.getLogger(__name__)

VISION_LIMIT = 30
VISION_TEXT_LIMIT = 80


class VisionService(ABC):
    """Optional screenshot analyser feeding observations into the decision context."""

    @abstractmethod
    def analyze(self, screenshot: bytes) -> list[VisionObservation]:
        raise NotImplementedError


def summarize_vision(
    observations: Iterable[VisionObservation],
    limit: int = VISION_LIMIT,
    text_limit: int = VISION_TEXT_LIMIT,
) -> list[dict[str, Any]]:
    ranked = sorted(observations, key=lambda item: item.confidence or 0.0, reverse=True)[:limit]
    summary: list[dict[str, Any]] = []
    for item in ranked:
        payload = item.to_payload()
        if payload["text"]:
            payload["text"] = payload["text"][:text_limit]
        summary.append(payload)
    return summary


@dataclass(frozen=True, slots=True)
class DecisionOutcome:
    action: ActionPlan | None
    rejected: bool = False
    reason: str | None = None
    violated_field: str | None = None
    error_code: str | None = None
    latency_ms: float = 0.0

    @property
    def fallback_used(self) -> bool:
        return self.rejected and self.action is not None


class DecisionEngine:
    """Asks the decision model for the next action and passes it through the safety validator."""

    def __init__(
        self,
        client: DecisionModelClient,
        safety: DecisionSafetyValidator | None = None,
        audit_logger: TraversalAuditLogger | None = None,
        alert_sink: AlertSink | None = None,
        history_size: int = 5,
    ) -> None:
        self.client = client
        self.safety = safety or DecisionSafetyValidator()
        self.audit_logger = audit_logger
        self.alert_sink = alert_sink
        self.history_size = history_size

    def decide(self, context: RunContext, intent: ActionPlan | None = None) -> DecisionOutcome:
        request_payload = self.build_context(context, intent)
        started = time.perf_counter()
        try:
            response = self.client.generate_action(request_payload)
        except MalformedDecisionError as exc:
            latency_ms = (time.perf_counter() - started) * 1000
            result = SafetyCheckResult(False, str(exc), "response", stage="shape")
            return self._reject(context, request_payload, None, result, latency_ms, "MALFORMED_RESPONSE")
        except Exception as exc:  # noqa: BLE001 - audit logging needs the concrete failure.
            latency_ms = (time.perf_counter() - started) * 1000
            self._audit(context, request_payload, {"error": str(exc)}, latency_ms, None, "MODEL_ERROR", None)
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        allowed = context.allowed_actions or None
        result = self.safety.validate(response, allowed)
        if result.rejected:
            code = "SHAPE_VIOLATION" if result.stage == "shape" else "POLICY_VIOLATION"
            return self._reject(context, request_payload, response, result, latency_ms, code)

        try:
            action = ActionPlan.from_payload(response["actionPlan"], source="model")
        except ValueError as exc:
            result = SafetyCheckResult(False, str(exc), "actionPlan.params", stage="shape")
            return self._reject(context, request_payload, response, result, latency_ms, "SHAPE_VIOLATION")
        if intent is not None:
            action = replace(action, depth=intent.depth)

        self._audit(context, request_payload, response, latency_ms, None, None, action)
        log.debug("Decision for run %s: %s (confidence %.2f)", context.run_id, action.label, action.confidence)
        return DecisionOutcome(action=action, latency_ms=latency_ms)

    def build_context(self, context: RunContext, intent: ActionPlan | None) -> dict[str, Any]:
        capture = context.current_capture
        payload: dict[str, Any] = {
            "runId": context.run_id,
            "screenSignature": context.current_signature,
            "allowedActions": [item.value for item in context.allowed_actions],
            "history": context.recent_history(self.history_size),
        }
        if capture is not None:
            payload["domSummary"] = build_dom_summary(capture.dom)
            if capture.vision:
                payload["visionSummary"] = summarize_vision(capture.vision)
        if intent is not None:
            payload["intent"] = intent.description or intent.label
        return payload

    def _reject(
        self,
        context: RunContext,
        request_payload: dict[str, Any],
        response: Any,
        result: SafetyCheckResult,
        latency_ms: float,
        error_code: str,
    ) -> DecisionOutcome:
        fallback = result.fallback
        if fallback is None and error_code in ("MALFORMED_RESPONSE", "SHAPE_VIOLATION"):
            fallback = navigate_back("generic fallback")
        self._audit(context, request_payload, response, latency_ms, result, error_code, fallback)
        emit_alert(
            self.alert_sink,
            POLICY_BLOCKED,
            "P2",
            f"Decision rejected: {result.reason}",
            build_alert(result, context.run_id, response),
        )
        log.warning(
            "Run %s decision rejected (%s): %s; fallback=%s",
            context.run_id,
            error_code,
            result.reason,
            fallback.label if fallback else None,
        )
        return DecisionOutcome(
            action=fallback,
            rejected=True,
            reason=result.reason,
            violated_field=result.violated_field,
            error_code=error_code,
            latency_ms=latency_ms,
        )

    def _audit(
        self,
        context: RunContext,
        request_payload: dict[str, Any],
        response: Any,
        latency_ms: float,
        result: SafetyCheckResult | None,
        error_code: str | None,
        final_action: ActionPlan | None,
    ) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.write_decision(
            DecisionRecord(
                run_id=context.run_id,
                provider=getattr(self.client, "provider_name", "unknown"),
                model=getattr(self.client, "model", None),
                latency_ms=latency_ms,
                request_payload=request_payload,
                response_payload=response,
                rejected=result is not None and result.rejected,
                reason=result.reason if result else None,
                violated_field=result.violated_field if result else None,
                error_code=error_code,
                final_action=final_action.to_payload() if final_action else {},
                usage=dict(getattr(self.client, "last_usage", {}) or {}),
            )
        )
