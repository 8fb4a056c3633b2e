from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Iterable

from traversal.config.schema import SafetyConfig
from traversal.core.models import ActionPlan, ActionType, navigate_back

log = logging.getLogger(__name__)

SENSITIVE_INPUT_PATTERNS = (
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"\d{15,19}"),
    re.compile(r"\d{6,8}"),
)
SCROLL_DIRECTIONS = frozenset({"up", "down", "left", "right"})


@dataclass(frozen=True, slots=True)
class SafetyCheckResult:
    passed: bool
    reason: str | None = None
    violated_field: str | None = None
    fallback: ActionPlan | None = None
    stage: str | None = None

    @property
    def rejected(self) -> bool:
        return not self.passed


PASS = SafetyCheckResult(passed=True)


class DecisionSafetyValidator:
    """Filters a model-proposed action before it may touch the device.

    Checks run in order (shape, whitelist, params, confidence floor) and stop at the
    first failure. Rejections are returned as values; nothing here raises.
    """

    def __init__(self, config: SafetyConfig | None = None) -> None:
        self.config = config or SafetyConfig()

    def validate(self, response: Any, allowed_actions: Iterable[ActionType | str] | None = None) -> SafetyCheckResult:
        allowed = {self._action_name(item) for item in (allowed_actions or self.config.allowed_actions)}
        for stage, check in (
            ("shape", self.check_shape),
            ("whitelist", lambda payload: self.check_whitelist(payload, allowed)),
            ("params", self.check_params),
            ("confidence", self.check_confidence),
        ):
            result = check(response)
            if not result.passed:
                log.warning("Decision rejected by %s check on %s: %s", stage, result.violated_field, result.reason)
                return replace(result, stage=stage)
        return PASS

    def check_shape(self, response: Any) -> SafetyCheckResult:
        if not isinstance(response, dict):
            return SafetyCheckResult(False, "response is not a JSON object", "response")
        plan = response.get("actionPlan")
        if not isinstance(plan, dict):
            return SafetyCheckResult(False, "actionPlan is missing or not an object", "actionPlan")
        action_type = plan.get("actionType")
        if not isinstance(action_type, str) or not action_type.strip():
            return SafetyCheckResult(False, "actionType is missing", "actionPlan.actionType")
        if not isinstance(plan.get("params"), dict):
            return SafetyCheckResult(False, "params must be an object", "actionPlan.params")
        confidence = plan.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            return SafetyCheckResult(False, "confidence must be a number in [0, 1]", "actionPlan.confidence")
        return PASS

    def check_whitelist(self, response: dict[str, Any], allowed: set[str]) -> SafetyCheckResult:
        action_type = str(response["actionPlan"]["actionType"]).strip().upper()
        if action_type not in allowed:
            return SafetyCheckResult(
                False,
                f"action type {action_type} is not in the whitelist ({', '.join(sorted(allowed))})",
                "actionPlan.actionType",
                navigate_back("whitelist fallback"),
            )
        return PASS

    def check_params(self, response: dict[str, Any]) -> SafetyCheckResult:
        plan = response["actionPlan"]
        action_type = str(plan["actionType"]).strip().upper()
        params = plan["params"]
        if action_type in (ActionType.CLICK.value, ActionType.LONG_PRESS.value):
            return self._check_target(params)
        if action_type == ActionType.INPUT.value:
            return self._check_input(params)
        if action_type in (ActionType.SCROLL.value, ActionType.SWIPE.value):
            direction = str(params.get("direction") or "").lower()
            if direction not in SCROLL_DIRECTIONS:
                return SafetyCheckResult(False, f"invalid scroll direction: {params.get('direction')!r}", "params.direction")
        return PASS

    def check_confidence(self, response: dict[str, Any]) -> SafetyCheckResult:
        confidence = float(response["actionPlan"]["confidence"])
        if confidence < self.config.confidence_floor:
            return SafetyCheckResult(
                False,
                f"confidence {confidence} is below the floor {self.config.confidence_floor}",
                "actionPlan.confidence",
                navigate_back("low confidence fallback"),
            )
        return PASS

    def _check_target(self, params: dict[str, Any]) -> SafetyCheckResult:
        target = params.get("target")
        if target in (None, "", {}):
            return SafetyCheckResult(False, "click target is required", "params.target")
        rendered = (target if isinstance(target, str) else json.dumps(target, ensure_ascii=False)).lower()
        for keyword in self.config.sensitive_keywords:
            if keyword.lower() in rendered:
                return SafetyCheckResult(False, f"target matches sensitive element keyword '{keyword}'", "params.target")
        if isinstance(target, dict) and ("x" in target or "y" in target):
            bound = self.config.coordinate_bound
            for axis in ("x", "y"):
                value = target.get(axis)
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= bound:
                    return SafetyCheckResult(False, f"coordinate {axis}={value!r} is outside [0, {bound:g}]", "params.target")
        return PASS

    def _check_input(self, params: dict[str, Any]) -> SafetyCheckResult:
        text = params.get("text")
        if not isinstance(text, str) or not text:
            return SafetyCheckResult(False, "input text is required", "params.text")
        if len(text) > self.config.max_input_length:
            return SafetyCheckResult(
                False, f"input text exceeds {self.config.max_input_length} characters", "params.text"
            )
        for pattern in SENSITIVE_INPUT_PATTERNS:
            if pattern.search(text):
                return SafetyCheckResult(False, f"input matches sensitive pattern {pattern.pattern}", "params.text")
        return PASS

    @staticmethod
    def _action_name(value: ActionType | str) -> str:
        return value.value if isinstance(value, ActionType) else str(value).strip().upper()


def build_alert(result: SafetyCheckResult, run_id: str, proposed: Any) -> dict[str, Any]:
    return {
        "runId": run_id,
        "reason": result.reason,
        "violatedField": result.violated_field,
        "fallbackUsed": result.fallback is not None,
        "proposed": proposed,
    }
