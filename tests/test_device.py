from __future__ import annotations

import json

import pytest
from appium.webdriver.common.appiumby import AppiumBy
from selenium.common.exceptions import WebDriverException

from tests.helpers import APP_PACKAGE, DEVICE_ID
from traversal.config.schema import DeviceConfig
from traversal.core.device import AppiumDeviceDriver, DeviceSession
from traversal.core.models import LocatorStrategy
from traversal.logging.alerts import POLICY_BLOCKED, AlertSink, JsonlAlertSink, emit_alert


class StubElement:
    rect = {"x": 100, "y": 200, "width": 50, "height": 30}

    def __init__(self, calls):
        self.calls = calls

    def click(self):
        self.calls.append(("click",))

    def clear(self):
        self.calls.append(("clear",))

    def send_keys(self, text):
        self.calls.append(("send_keys", text))


class StubHandle:
    """Records the Appium commands a driver issues against one session."""

    def __init__(self, missing=(), fail_on=()):
        self.calls = []
        self.missing = set(missing)
        self.fail_on = set(fail_on)

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise WebDriverException(f"{name} rejected")

    def find_element(self, by, value):
        self.calls.append(("find_element", by, value))
        if value in self.missing:
            raise WebDriverException("element gone")
        return StubElement(self.calls)

    def get_window_size(self):
        return {"width": 1000, "height": 2000}

    def swipe(self, start_x, start_y, end_x, end_y, duration):
        self._record("swipe", start_x, start_y, end_x, end_y, duration)

    def tap(self, positions, duration=None):
        self._record("tap", positions, duration)

    def back(self):
        self._record("back")

    def execute_script(self, script, args):
        self._record("execute_script", script, args)

    def terminate_app(self, app_id):
        self._record("terminate_app", app_id)

    def activate_app(self, app_id):
        self._record("activate_app", app_id)

    def quit(self):
        self._record("quit")


def _session(handle):
    return DeviceSession(session_id="appium-1", device_id=DEVICE_ID, app_package=APP_PACKAGE, handle=handle)


@pytest.fixture
def appium_driver():
    return AppiumDeviceDriver(DeviceConfig())


@pytest.mark.parametrize(
    ("strategy", "locator", "expected"),
    [
        (LocatorStrategy.ID, "com.example.shop:id/buy", (AppiumBy.ID, "com.example.shop:id/buy")),
        (LocatorStrategy.ACCESSIBILITY_ID, "Buy now", (AppiumBy.ACCESSIBILITY_ID, "Buy now")),
        (LocatorStrategy.XPATH, "//android.widget.Button[1]", (AppiumBy.XPATH, "//android.widget.Button[1]")),
        (
            LocatorStrategy.TEXT,
            'Say "hi" \\ bye',
            (AppiumBy.ANDROID_UIAUTOMATOR, 'new UiSelector().text("Say \\"hi\\" \\\\ bye")'),
        ),
    ],
)
def test_locator_strategies_map_to_appium_selectors(strategy, locator, expected):
    assert AppiumDeviceDriver._by(strategy, locator) == expected


def test_image_template_has_no_driver_selector():
    with pytest.raises(ValueError):
        AppiumDeviceDriver._by(LocatorStrategy.IMAGE_TEMPLATE, "button.png")


def test_click_finds_and_clicks_the_element(appium_driver):
    handle = StubHandle()
    assert appium_driver.click(_session(handle), LocatorStrategy.TEXT, "Buy")
    assert handle.calls == [
        ("find_element", AppiumBy.ANDROID_UIAUTOMATOR, 'new UiSelector().text("Buy")'),
        ("click",),
    ]


def test_missing_element_is_reported_as_a_failed_click(appium_driver):
    handle = StubHandle(missing={"buy"})
    assert appium_driver.click(_session(handle), LocatorStrategy.ID, "buy") is False
    assert appium_driver.input(_session(handle), LocatorStrategy.ID, "buy", "text") is False
    assert appium_driver.long_press(_session(handle), LocatorStrategy.ID, "buy", 800) is False


def test_input_replaces_the_field_text(appium_driver):
    handle = StubHandle()
    assert appium_driver.input(_session(handle), LocatorStrategy.ID, "email", "user@example.com")
    assert handle.calls[1:] == [("clear",), ("send_keys", "user@example.com")]


def test_long_press_taps_the_element_center(appium_driver):
    handle = StubHandle()
    assert appium_driver.long_press(_session(handle), LocatorStrategy.ID, "item", 800)
    assert handle.calls[-1] == ("tap", [(125, 215)], 800)


@pytest.mark.parametrize(
    ("direction", "distance", "swipe"),
    [
        ("up", None, (500, 1600, 500, 933, 300)),
        ("DOWN", None, (500, 400, 500, 1066, 300)),
        ("left", 300, (800, 1000, 500, 1000, 300)),
        ("right", 300, (200, 1000, 500, 1000, 300)),
    ],
)
def test_scroll_swipes_from_the_screen_edge(appium_driver, direction, distance, swipe):
    handle = StubHandle()
    assert appium_driver.scroll(_session(handle), direction, distance)
    assert handle.calls == [("swipe", *swipe)]


def test_unknown_scroll_direction_is_rejected_without_a_gesture(appium_driver):
    handle = StubHandle()
    assert appium_driver.scroll(_session(handle), "diagonal") is False
    assert handle.calls == []


def test_swipe_moves_content_opposite_to_the_scroll(appium_driver):
    handle = StubHandle()
    assert appium_driver.swipe(_session(handle), "up")
    assert handle.calls == [("swipe", 500, 400, 500, 1066, 300)]


@pytest.mark.parametrize("command", ["swipe", "back", "tap"])
def test_rejected_gestures_return_false(appium_driver, command):
    handle = StubHandle(fail_on={command})
    session = _session(handle)
    results = {
        "swipe": lambda: appium_driver.scroll(session, "down"),
        "back": lambda: appium_driver.back(session),
        "tap": lambda: appium_driver.tap(session, 10.6, 20.2),
    }
    assert results[command]() is False


def test_app_lifecycle_commands(appium_driver):
    handle = StubHandle()
    session = _session(handle)
    appium_driver.launch_app(session, APP_PACKAGE)
    appium_driver.restart_app(session, APP_PACKAGE)
    appium_driver.clear_app_data(session, APP_PACKAGE)
    assert handle.calls == [
        ("activate_app", APP_PACKAGE),
        ("terminate_app", APP_PACKAGE),
        ("activate_app", APP_PACKAGE),
        ("execute_script", "mobile: clearApp", {"appId": APP_PACKAGE}),
    ]


def test_closing_a_dead_session_does_not_raise(appium_driver):
    handle = StubHandle(fail_on={"quit"})
    appium_driver.close_session(_session(handle))
    assert handle.calls == [("quit",)]


def test_jsonl_alert_sink_appends_open_alerts(tmp_path):
    sink = JsonlAlertSink(tmp_path / "artifacts")
    emit_alert(sink, POLICY_BLOCKED, "P2", "blocked purchase", {"runId": "run-1", "action": "CLICK:Buy"})
    emit_alert(sink, POLICY_BLOCKED, "P2", "blocked payment", {"runId": "run-1"})

    lines = (tmp_path / "artifacts" / "alerts.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["alert_type"] == POLICY_BLOCKED
    assert first["severity"] == "P2"
    assert first["message"] == "blocked purchase"
    assert first["payload"] == {"runId": "run-1", "action": "CLICK:Buy"}
    assert first["status"] == "OPEN"
    assert first["triggered_at"]
    assert json.loads(lines[1])["message"] == "blocked payment"


class BrokenAlertSink(AlertSink):
    def raise_alert(self, kind, severity, message, payload):
        raise OSError("disk full")


def test_failing_alert_sink_does_not_interrupt_the_caller():
    emit_alert(BrokenAlertSink(), POLICY_BLOCKED, "P2", "blocked", {})
    emit_alert(None, POLICY_BLOCKED, "P2", "blocked", {})
