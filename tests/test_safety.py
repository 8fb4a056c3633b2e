from __future__ import annotations

import pytest

from tests.helpers import decision
from traversal.core.models import ActionType, NavigateParams
from traversal.llm.safety import DecisionSafetyValidator


@pytest.fixture()
def validator():
    return DecisionSafetyValidator()


def _is_navigate_back(plan) -> bool:
    return plan is not None and plan.action_type is ActionType.NAVIGATE and plan.params == NavigateParams("back")


def test_valid_action_passes(validator):
    result = validator.validate(decision("CLICK", target="Settings"))
    assert result.passed
    assert result.fallback is None


@pytest.mark.parametrize(
    "response",
    [
        decision("CLICK", confidence=0.1, target="Next"),
        decision("SCROLL", confidence=0.1, direction="down"),
        decision("NAVIGATE", confidence=0.1, direction="back"),
    ],
)
def test_low_confidence_is_rejected_with_back_fallback(validator, response):
    result = validator.validate(response)
    assert result.rejected
    assert result.stage == "confidence"
    assert "0.1" in result.reason
    assert _is_navigate_back(result.fallback)


def test_whitelist_rejects_unlisted_action(validator):
    result = validator.validate(decision("UNINSTALL", target="app"), allowed_actions=["CLICK", "INPUT"])
    assert result.rejected
    assert "whitelist" in result.reason
    assert result.violated_field == "actionPlan.actionType"
    assert _is_navigate_back(result.fallback)


@pytest.mark.parametrize("target", ["删除按钮", "delete button", "Confirm PURCHASE", {"text": "Log out", "id": "logout"}])
def test_sensitive_click_targets_are_rejected(validator, target):
    result = validator.validate(decision("CLICK", target=target))
    assert result.rejected
    assert "sensitive" in result.reason
    assert result.violated_field == "params.target"
    assert result.fallback is None


@pytest.mark.parametrize(
    "target",
    [{"x": -1, "y": 10}, {"x": 10, "y": 10001}, {"x": "10", "y": 10}],
)
def test_coordinates_must_be_in_bounds(validator, target):
    result = validator.validate(decision("CLICK", target=target))
    assert result.rejected
    assert result.violated_field == "params.target"


def test_coordinates_inside_bounds_pass(validator):
    assert validator.validate(decision("CLICK", target={"x": 540, "y": 1200})).passed


@pytest.mark.parametrize(
    "text",
    [
        "'; DROP TABLE users; --",
        "<script>alert(1)</script>",
        "rm -rf /",
        "4111111111111111",
        "123456",
        "x" * 1001,
        "",
    ],
)
def test_input_text_rules(validator, text):
    result = validator.validate(decision("INPUT", text=text, target="Search"))
    assert result.rejected
    assert result.violated_field == "params.text"


def test_plain_input_passes(validator):
    assert validator.validate(decision("INPUT", text="hello world", target="Search")).passed


def test_scroll_direction_must_be_known(validator):
    assert validator.validate(decision("SCROLL", direction="Up")).passed
    result = validator.validate(decision("SCROLL", direction="diagonal"))
    assert result.rejected
    assert result.violated_field == "params.direction"


@pytest.mark.parametrize(
    "response, field",
    [
        ("not an object", "response"),
        ({"reasoning": "missing plan"}, "actionPlan"),
        ({"actionPlan": {"params": {}, "confidence": 0.5}}, "actionPlan.actionType"),
        ({"actionPlan": {"actionType": "CLICK", "params": "Settings", "confidence": 0.5}}, "actionPlan.params"),
        ({"actionPlan": {"actionType": "CLICK", "params": {}, "confidence": 1.5}}, "actionPlan.confidence"),
    ],
)
def test_shape_violations_offer_no_fallback(validator, response, field):
    result = validator.validate(response)
    assert result.rejected
    assert result.stage == "shape"
    assert result.violated_field == field
    assert result.fallback is None


def test_checks_short_circuit_in_order(validator):
    # a forbidden type with a sensitive target and low confidence fails on the whitelist first
    result = validator.validate(decision("UNINSTALL", confidence=0.1, target="delete"), allowed_actions=["CLICK"])
    assert result.stage == "whitelist"
