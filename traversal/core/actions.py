from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from traversal.config.schema import LocatorConfig
from traversal.core.device import DeviceDriver, DeviceSession
from traversal.core.models import (
    ActionPlan,
    AttemptOutcome,
    ClickParams,
    ElementDescriptor,
    InputParams,
    LocatorCandidate,
    LocatorStrategy,
    LongPressParams,
    NavigateParams,
    Point,
    ScreenCapture,
    ScrollParams,
    SwipeParams,
    VisionObservation,
)
from traversal.locators.generator import LocatorGenerator, element_key
from traversal.locators.validator import LocatorRegistry, LocatorValidator
from traversal.utils.dom_extract import iter_elements
from traversal.utils.scoring import match_element

log = logging.getLogger(__name__)

ElementAction = Callable[[LocatorStrategy, str], bool]


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    success: bool
    note: str | None = None
    candidate_id: str | None = None
    error_code: str | None = None


class ActionExecutor:
    """Runs an action plan on the device, resolving element targets through the locator engine."""

    def __init__(
        self,
        driver: DeviceDriver,
        validator: LocatorValidator,
        generator: LocatorGenerator | None = None,
        registry: LocatorRegistry | None = None,
        locator_config: LocatorConfig | None = None,
    ) -> None:
        self.driver = driver
        self.validator = validator
        self.locator_config = locator_config or LocatorConfig()
        self.generator = generator or LocatorGenerator(
            max_candidates=self.locator_config.max_candidates,
            historical_threshold=self.locator_config.historical_threshold,
        )
        self.registry = registry or LocatorRegistry()

    def execute(
        self,
        run_id: str,
        session: DeviceSession,
        action: ActionPlan,
        capture: ScreenCapture | None = None,
    ) -> ExecutionOutcome:
        params = action.params
        if isinstance(params, ClickParams):
            return self._on_target(
                run_id,
                session,
                params.target,
                capture,
                lambda strategy, value: self.driver.click(session, strategy, value),
                lambda point: self.driver.tap(session, point.x, point.y),
            )
        if isinstance(params, LongPressParams):
            return self._on_target(
                run_id,
                session,
                params.target,
                capture,
                lambda strategy, value: self.driver.long_press(session, strategy, value, params.duration_ms),
                lambda point: self.driver.tap(session, point.x, point.y, params.duration_ms),
            )
        if isinstance(params, InputParams):
            return self._input(run_id, session, params, capture)
        if isinstance(params, ScrollParams):
            return self._outcome(self.driver.scroll(session, params.direction, params.distance), "scroll rejected")
        if isinstance(params, SwipeParams):
            return self._outcome(self.driver.swipe(session, params.direction, params.distance), "swipe rejected")
        if isinstance(params, NavigateParams):
            if params.direction != "back":
                log.debug("Navigate direction %s is issued as back navigation", params.direction)
            return self._outcome(self.driver.back(session), "back navigation rejected")
        return ExecutionOutcome(False, f"unsupported params {type(params).__name__}", error_code="UNSUPPORTED_ACTION")

    def _input(
        self,
        run_id: str,
        session: DeviceSession,
        params: InputParams,
        capture: ScreenCapture | None,
    ) -> ExecutionOutcome:
        def type_into(strategy: LocatorStrategy, value: str) -> bool:
            return self.driver.input(session, strategy, value, params.text)

        target = params.target
        if target is None:
            field = self._first_text_field(capture)
            if field is None:
                return ExecutionOutcome(False, "no input field on screen", error_code="TARGET_NOT_FOUND")
            return self._validate_element(run_id, field, None, type_into, None)
        return self._on_target(run_id, session, target, capture, type_into, None)

    def _on_target(
        self,
        run_id: str,
        session: DeviceSession,
        target: str | Point,
        capture: ScreenCapture | None,
        on_element: ElementAction,
        on_point: Callable[[Point], bool] | None,
    ) -> ExecutionOutcome:
        if isinstance(target, Point):
            if on_point is not None:
                return self._outcome(on_point(target), f"tap at {target.x:g},{target.y:g} rejected")
            element = self._element_at(capture, target)
            if element is None:
                return ExecutionOutcome(False, "no element at the given coordinates", error_code="TARGET_NOT_FOUND")
            return self._validate_element(run_id, element, None, on_element, None)

        element = self._resolve(target, capture)
        vision = self._vision_for(target, capture)
        tap = (lambda point: self.driver.tap(session, point.x, point.y)) if on_point is None else on_point
        return self._validate_element(run_id, element, vision, on_element, tap)

    def _validate_element(
        self,
        run_id: str,
        element: ElementDescriptor,
        vision: VisionObservation | None,
        on_element: ElementAction,
        on_point: Callable[[Point], bool] | None,
    ) -> ExecutionOutcome:
        key = element_key(element)
        historical = self.registry.historical(key, self.locator_config.historical_threshold)
        candidates = self.registry.register(self.generator.generate(element, vision, historical))

        def attempt(candidate: LocatorCandidate) -> AttemptOutcome:
            started = time.perf_counter()
            if candidate.strategy is LocatorStrategy.IMAGE_TEMPLATE:
                if on_point is None:
                    return AttemptOutcome(False, note="region candidates cannot receive text")
                passed = on_point(_region_center(candidate.value))
            else:
                passed = on_element(candidate.strategy, candidate.value)
            return AttemptOutcome(
                passed=passed,
                latency_ms=(time.perf_counter() - started) * 1000,
                note=None if passed else "driver reported failure",
            )

        outcome = self.validator.validate(run_id, candidates, attempt)
        if outcome.found:
            return ExecutionOutcome(True, candidate_id=outcome.candidate_id)
        return ExecutionOutcome(
            False,
            f"no locator found after {outcome.attempts} attempts",
            error_code="LOCATOR_EXHAUSTED",
        )

    @staticmethod
    def _resolve(target: str, capture: ScreenCapture | None) -> ElementDescriptor:
        if capture is not None:
            element = match_element(target, iter_elements(capture.dom))
            if element is not None:
                return element
        if ":id/" in target:
            return ElementDescriptor(element_type="unknown", resource_id=target)
        if target.startswith("/"):
            return ElementDescriptor(element_type="unknown", xpath=target)
        return ElementDescriptor(element_type="unknown", text=target)

    @staticmethod
    def _vision_for(target: str, capture: ScreenCapture | None) -> VisionObservation | None:
        if capture is None:
            return None
        needle = target.strip().lower()
        for observation in capture.vision:
            if observation.text and needle and needle in observation.text.lower():
                return observation
        return None

    @staticmethod
    def _element_at(capture: ScreenCapture | None, point: Point) -> ElementDescriptor | None:
        if capture is None:
            return None
        hits = [
            element
            for element in iter_elements(capture.dom)
            if element.bounds is not None
            and element.bounds.x <= point.x <= element.bounds.x + element.bounds.width
            and element.bounds.y <= point.y <= element.bounds.y + element.bounds.height
        ]
        # innermost element wins
        return hits[-1] if hits else None

    @staticmethod
    def _first_text_field(capture: ScreenCapture | None) -> ElementDescriptor | None:
        if capture is None:
            return None
        for element in iter_elements(capture.dom):
            if "EditText" in element.element_type:
                return element
        return None

    @staticmethod
    def _outcome(passed: bool, note: str) -> ExecutionOutcome:
        if passed:
            return ExecutionOutcome(True)
        return ExecutionOutcome(False, note, error_code="DRIVER_REJECTED")


def _region_center(value: str) -> Point:
    x, y, width, height = (float(part) for part in value.split(","))
    return Point(x + width / 2, y + height / 2)
