from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union


class ActionType(str, Enum):
    CLICK = "CLICK"
    INPUT = "INPUT"
    SCROLL = "SCROLL"
    NAVIGATE = "NAVIGATE"
    SWIPE = "SWIPE"
    LONG_PRESS = "LONG_PRESS"

    @classmethod
    def parse(cls, value: Any) -> ActionType:
        return cls(str(value).strip().upper())


class LocatorStrategy(str, Enum):
    ID = "ID"
    TEXT = "TEXT"
    ACCESSIBILITY_ID = "ACCESSIBILITY_ID"
    XPATH = "XPATH"
    IMAGE_TEMPLATE = "IMAGE_TEMPLATE"


class LocatorSource(str, Enum):
    DOM = "DOM"
    VISION = "VISION"
    HISTORICAL = "HISTORICAL"


class ValidationStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True, slots=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    def to_payload(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True, slots=True)
class ClickParams:
    target: str | Point


@dataclass(frozen=True, slots=True)
class LongPressParams:
    target: str | Point
    duration_ms: int = 1000


@dataclass(frozen=True, slots=True)
class InputParams:
    text: str
    target: str | Point | None = None


@dataclass(frozen=True, slots=True)
class ScrollParams:
    direction: str
    distance: float | None = None


@dataclass(frozen=True, slots=True)
class SwipeParams:
    direction: str
    distance: float | None = None


@dataclass(frozen=True, slots=True)
class NavigateParams:
    direction: str = "back"


ActionParams = Union[ClickParams, LongPressParams, InputParams, ScrollParams, SwipeParams, NavigateParams]


def _target_from_payload(raw: Any) -> str | Point | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        if "x" in raw and "y" in raw:
            return Point(float(raw["x"]), float(raw["y"]))
        locator = raw.get("locator") or raw.get("text") or raw.get("id")
        return str(locator) if locator else json.dumps(raw, ensure_ascii=False, sort_keys=True)
    return str(raw)


def _target_to_payload(target: str | Point | None) -> Any:
    if isinstance(target, Point):
        return {"x": target.x, "y": target.y}
    return target


def params_from_payload(action_type: ActionType, raw: dict[str, Any]) -> ActionParams:
    if action_type is ActionType.CLICK:
        target = _target_from_payload(raw.get("target"))
        if target is None:
            raise ValueError("CLICK requires a target")
        return ClickParams(target=target)
    if action_type is ActionType.LONG_PRESS:
        target = _target_from_payload(raw.get("target"))
        if target is None:
            raise ValueError("LONG_PRESS requires a target")
        return LongPressParams(target=target, duration_ms=int(raw.get("durationMs", 1000)))
    if action_type is ActionType.INPUT:
        text = raw.get("text")
        if not text:
            raise ValueError("INPUT requires text")
        return InputParams(text=str(text), target=_target_from_payload(raw.get("target")))
    if action_type in (ActionType.SCROLL, ActionType.SWIPE):
        direction = raw.get("direction")
        if not direction:
            raise ValueError(f"{action_type.value} requires a direction")
        distance = raw.get("distance")
        params_type = ScrollParams if action_type is ActionType.SCROLL else SwipeParams
        return params_type(
            direction=str(direction).lower(),
            distance=float(distance) if distance is not None else None,
        )
    return NavigateParams(direction=str(raw.get("direction") or "back").lower())


def params_to_payload(params: ActionParams) -> dict[str, Any]:
    if isinstance(params, ClickParams):
        return {"target": _target_to_payload(params.target)}
    if isinstance(params, LongPressParams):
        return {"target": _target_to_payload(params.target), "durationMs": params.duration_ms}
    if isinstance(params, InputParams):
        payload: dict[str, Any] = {"text": params.text}
        if params.target is not None:
            payload["target"] = _target_to_payload(params.target)
        return payload
    if isinstance(params, (ScrollParams, SwipeParams)):
        payload = {"direction": params.direction}
        if params.distance is not None:
            payload["distance"] = params.distance
        return payload
    return {"direction": params.direction}


@dataclass(frozen=True, slots=True)
class ActionPlan:
    """One proposed or queued device interaction."""

    action_type: ActionType
    params: ActionParams
    description: str = ""
    confidence: float = 1.0
    expected_outcome: str | None = None
    target_signature: str | None = None
    depth: int = 0
    source: str = "model"

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, source: str = "model") -> ActionPlan:
        action_type = ActionType.parse(payload.get("actionType"))
        return cls(
            action_type=action_type,
            params=params_from_payload(action_type, payload.get("params") or {}),
            description=str(payload.get("description") or ""),
            confidence=float(payload.get("confidence", 1.0)),
            expected_outcome=payload.get("expectedOutcome"),
            target_signature=payload.get("targetSignature"),
            depth=int(payload.get("depth", 0)),
            source=source,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "actionType": self.action_type.value,
            "params": params_to_payload(self.params),
            "description": self.description,
            "confidence": self.confidence,
            "source": self.source,
            "depth": self.depth,
        }
        if self.expected_outcome:
            payload["expectedOutcome"] = self.expected_outcome
        return payload

    @property
    def target_text(self) -> str:
        target = getattr(self.params, "target", None)
        if target is None:
            return ""
        if isinstance(target, Point):
            return f"{target.x:g},{target.y:g}"
        return target

    @property
    def label(self) -> str:
        detail = self.target_text or getattr(self.params, "direction", "")
        return f"{self.action_type.value}:{detail}" if detail else self.action_type.value


def navigate_back(description: str = "navigate back", *, source: str = "fallback") -> ActionPlan:
    return ActionPlan(
        action_type=ActionType.NAVIGATE,
        params=NavigateParams(direction="back"),
        description=description,
        confidence=1.0,
        source=source,
    )


@dataclass(frozen=True, slots=True)
class ScreenSignature:
    signature: str
    screenshot_path: str
    dom_path: str
    width: int
    height: int
    primary_text: str = ""
    screenshot_hash: str = ""
    dom_hash: str = ""


@dataclass(frozen=True, slots=True)
class VisionObservation:
    text: str | None = None
    bbox: BoundingBox | None = None
    confidence: float | None = None
    element_type: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.element_type,
            "text": self.text,
            "bbox": self.bbox.to_payload() if self.bbox else None,
            "confidence": self.confidence,
        }


@dataclass(frozen=True, slots=True)
class ScreenCapture:
    signature: ScreenSignature
    dom: dict[str, Any]
    screenshot: bytes = field(repr=False)
    vision: tuple[VisionObservation, ...] = ()


@dataclass(frozen=True, slots=True)
class ElementDescriptor:
    element_type: str
    resource_id: str | None = None
    content_desc: str | None = None
    text: str | None = None
    xpath: str | None = None
    bounds: BoundingBox | None = None
    clickable: bool = False


@dataclass(slots=True)
class LocatorCandidate:
    candidate_id: str
    element_key: str
    strategy: LocatorStrategy
    value: str
    score: float
    source: LocatorSource
    is_primary: bool = False
    dynamic_flags: dict[str, Any] = field(default_factory=dict)
    success_rate: float = 0.0
    last_verified_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    passed: bool
    latency_ms: float = 0.0
    screenshot_path: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class ValidationRecord:
    candidate_id: str
    run_id: str
    status: ValidationStatus
    latency_ms: float
    attempted_at: datetime
    screenshot_path: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    run_id: str
    from_state: str
    to_state: str
    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: utc_now().isoformat())


@dataclass(slots=True)
class RunStats:
    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    coverage_screens: int = 0
    started_at: float = 0.0

    def to_payload(self) -> dict[str, int]:
        return {
            "totalActions": self.total_actions,
            "successfulActions": self.successful_actions,
            "failedActions": self.failed_actions,
            "coverageScreens": self.coverage_screens,
        }


@dataclass(frozen=True, slots=True)
class RunResult:
    run_id: str
    status: RunStatus
    stats: dict[str, int]
    failure_reason: str | None = None
    termination_reason: str | None = None
