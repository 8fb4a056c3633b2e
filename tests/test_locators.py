from __future__ import annotations

from tests.helpers import RecordingAlertSink
from traversal.core.models import (
    AttemptOutcome,
    BoundingBox,
    ElementDescriptor,
    LocatorCandidate,
    LocatorSource,
    LocatorStrategy,
    ValidationStatus,
    VisionObservation,
)
from traversal.locators.generator import LocatorGenerator, detect_dynamic, element_key
from traversal.locators.validator import LocatorRegistry, LocatorValidator, ValidationLedger
from traversal.logging.alerts import LOCATOR_FAILURE
from traversal.logging.audit import TraversalAuditLogger

LOGIN_BUTTON = ElementDescriptor(
    element_type="android.widget.Button",
    resource_id="com.example.shop:id/login",
    text="Login",
    xpath="/hierarchy/android.widget.FrameLayout[1]/android.widget.Button[1]",
)


def _candidate(candidate_id: str, score: float, primary: bool = False) -> LocatorCandidate:
    return LocatorCandidate(
        candidate_id=candidate_id,
        element_key="element",
        strategy=LocatorStrategy.TEXT,
        value=candidate_id,
        score=score,
        source=LocatorSource.DOM,
        is_primary=primary,
    )


def test_identifier_candidate_ranks_first():
    candidates = LocatorGenerator().generate(LOGIN_BUTTON)
    by_strategy = {item.strategy: item for item in candidates}

    assert len(candidates) <= 5
    assert candidates[0].strategy is LocatorStrategy.ID
    assert candidates[0].is_primary and candidates[0].score >= 0.9
    assert [item.is_primary for item in candidates].count(True) == 1
    assert candidates[0].score > by_strategy[LocatorStrategy.TEXT].score == 0.8
    assert by_strategy[LocatorStrategy.TEXT].score > by_strategy[LocatorStrategy.XPATH].score == 0.6
    assert by_strategy[LocatorStrategy.XPATH].dynamic_flags == {"isXPath": True}


def test_dynamic_text_is_flagged_and_demoted():
    element = ElementDescriptor(element_type="android.widget.TextView", text="2024-01-01 12:00:00")
    text = LocatorGenerator().generate(element)[0]
    assert text.strategy is LocatorStrategy.TEXT
    assert text.score < 0.8
    assert text.dynamic_flags["isDynamic"] is True
    assert text.dynamic_flags["hasTimestamp"] is True


def test_uuid_and_long_digit_runs_are_flagged():
    assert detect_dynamic("order 123e4567-e89b-12d3-a456-426614174000")["hasUUID"] is True
    assert detect_dynamic("ticket 8812345")["hasPotentialRandom"] is True
    assert detect_dynamic("Settings") == {}


def test_dynamic_identifier_scores_lower():
    element = ElementDescriptor(element_type="android.widget.Button", resource_id="com.example.shop:id/row_1700000000")
    assert LocatorGenerator().generate(element)[0].score == 0.7


def test_vision_candidates_are_scored_by_consistency():
    bbox = BoundingBox(x=100, y=200, width=80, height=40)
    consistent = LocatorGenerator().generate(
        LOGIN_BUTTON, vision=VisionObservation(text="Login", bbox=bbox, confidence=0.93)
    )
    vision_text = [c for c in consistent if c.source is LocatorSource.VISION and c.strategy is LocatorStrategy.TEXT]
    assert vision_text and vision_text[0].score == 0.9
    region = [c for c in consistent if c.strategy is LocatorStrategy.IMAGE_TEMPLATE]
    assert region and region[0].score == 0.7 and region[0].value == "100,200,80,40"

    inconsistent = LocatorGenerator().generate(LOGIN_BUTTON, vision=VisionObservation(text="Sign up now"))
    assert any(c.source is LocatorSource.VISION and c.score == 0.75 for c in inconsistent)


def test_only_two_reliable_historical_locators_are_carried():
    key = element_key(LOGIN_BUTTON)
    historical = []
    for index, rate in enumerate((95.0, 90.0, 85.0, 50.0)):
        item = _candidate(f"hist-{index}", 0.5)
        item.element_key = key
        item.strategy = LocatorStrategy.ACCESSIBILITY_ID
        item.value = f"legacy-{index}"
        item.success_rate = rate
        historical.append(item)

    candidates = LocatorGenerator(max_candidates=10).generate(LOGIN_BUTTON, historical=historical)
    carried = [item for item in candidates if item.source is LocatorSource.HISTORICAL]
    assert [item.value for item in carried] == ["legacy-0", "legacy-1"]
    assert all(item.score == 0.85 for item in carried)


def test_validation_stops_at_first_pass():
    calls = []

    def executor(candidate):
        calls.append(candidate.candidate_id)
        return AttemptOutcome(passed=candidate.candidate_id == "second", latency_ms=3.0)

    validator = LocatorValidator()
    candidates = [_candidate("third", 0.6), _candidate("first", 0.95, primary=True), _candidate("second", 0.8)]
    assert validator.validate_in_order("run-1", candidates, executor) == "second"
    assert calls == ["first", "second"]
    assert validator.ledger.records_for("first")[0].status is ValidationStatus.FAILED
    assert validator.ledger.records_for("third") == []
    assert candidates[2].last_verified_at is not None
    assert candidates[2].success_rate == 100.0


def test_exhausted_candidates_raise_locator_alert(tmp_path):
    sink = RecordingAlertSink()
    audit = TraversalAuditLogger(tmp_path)
    validator = LocatorValidator(audit_logger=audit, alert_sink=sink)
    candidates = [_candidate("a", 0.9, primary=True), _candidate("b", 0.8), _candidate("c", 0.7)]

    assert validator.validate_in_order("run-1", candidates, lambda c: AttemptOutcome(passed=False)) is None
    assert sink.kinds() == [LOCATOR_FAILURE]
    assert sink.alerts[0]["payload"]["attemptedCount"] == 3
    assert [row["status"] for row in audit.read_validations()] == ["FAILED"] * 3


def test_executor_errors_count_as_failed_attempts():
    def executor(candidate):
        raise RuntimeError("element went stale")

    validator = LocatorValidator()
    candidate = _candidate("only", 0.9, primary=True)
    assert validator.validate_in_order("run-1", [candidate], executor) is None
    record = validator.ledger.records_for("only")[0]
    assert record.status is ValidationStatus.FAILED
    assert "element went stale" in record.note


def test_success_rate_uses_the_last_ten_attempts():
    validator = LocatorValidator(ledger=ValidationLedger())
    candidate = _candidate("rolling", 0.9)
    for _ in range(3):
        validator.record("run-1", candidate, AttemptOutcome(passed=True))
    for _ in range(3):
        validator.record("run-1", candidate, AttemptOutcome(passed=False))
    assert candidate.success_rate == 50.0

    for _ in range(7):
        validator.record("run-1", candidate, AttemptOutcome(passed=False))
    # the three early passes have slid out of the window
    assert candidate.success_rate == 0.0
    validator.record("run-1", candidate, AttemptOutcome(passed=True))
    assert candidate.success_rate == 10.0


def test_registry_keeps_reliability_between_generations():
    registry = LocatorRegistry()
    generator = LocatorGenerator()
    first = registry.register(generator.generate(LOGIN_BUTTON))
    first[0].success_rate = 100.0

    again = registry.register(generator.generate(LOGIN_BUTTON))
    assert again[0] is first[0]
    assert registry.historical(first[0].element_key, 80.0) == [first[0]]
