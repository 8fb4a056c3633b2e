from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from urllib import error, request
from xml.sax.saxutils import quoteattr

import pytest

from traversal.config.schema import TraversalConfig
from traversal.core.device import DeviceDriver, DeviceSession
from traversal.core.models import LocatorStrategy
from traversal.llm.client import DecisionModelClient
from traversal.logging.alerts import AlertSink

DEVICE_ID = "emulator-5554"
APP_PACKAGE = "com.example.shop"


def screen_xml(*elements: dict[str, str]) -> str:
    """Builds a uiautomator dump with one FrameLayout holding the given widgets."""

    nodes = []
    for index, element in enumerate(elements):
        widget = element.get("class", "android.widget.Button")
        attributes = {
            "class": widget,
            "resource-id": element.get("id", ""),
            "text": element.get("text", ""),
            "content-desc": element.get("desc", ""),
            "clickable": element.get("clickable", "true"),
            "bounds": element.get("bounds", f"[0,{index * 200}][1080,{index * 200 + 150}]"),
        }
        rendered = " ".join(f"{key}={quoteattr(value)}" for key, value in attributes.items())
        nodes.append(f"<{widget} {rendered} />")
    return (
        '<hierarchy rotation="0">'
        '<android.widget.FrameLayout class="android.widget.FrameLayout" bounds="[0,0][1080,2400]">'
        + "".join(nodes)
        + "</android.widget.FrameLayout></hierarchy>"
    )


HOME_SCREEN = screen_xml(
    {"id": "com.example.shop:id/settings", "text": "Settings"},
    {"id": "com.example.shop:id/catalog", "text": "Catalog"},
)
SETTINGS_SCREEN = screen_xml(
    {"id": "com.example.shop:id/language", "text": "Language"},
    {"class": "android.widget.EditText", "id": "com.example.shop:id/nickname", "text": ""},
)
CATALOG_SCREEN = screen_xml({"id": "com.example.shop:id/item", "text": "First item"})


class FakeDeviceDriver(DeviceDriver):
    """Scripted device: screens are XML dumps and successful actions move between them."""

    def __init__(
        self,
        screens: dict[str, str] | None = None,
        start: str = "home",
        transitions: dict[str, str] | None = None,
    ) -> None:
        self.screens = screens or {"home": HOME_SCREEN, "settings": SETTINGS_SCREEN, "catalog": CATALOG_SCREEN}
        self.start = start
        self.current = start
        self.transitions = dict(transitions or {})
        self.calls: list[tuple[Any, ...]] = []
        self.create_failures = 0
        self.click_results: dict[str, bool] = {}
        self.back_result = True
        self.restart_error: Exception | None = None
        self.closed: list[str] = []
        self._sessions = 0

    def create_session(self, device_id: str, app_package: str) -> DeviceSession:
        self.calls.append(("create_session", device_id, app_package))
        if self.create_failures > 0:
            self.create_failures -= 1
            raise ConnectionError("device offline")
        self._sessions += 1
        return DeviceSession(session_id=f"session-{self._sessions}", device_id=device_id, app_package=app_package)

    def launch_app(self, session: DeviceSession, app_package: str) -> None:
        self.calls.append(("launch_app", app_package))
        self.current = self.start

    def take_screenshot(self, session: DeviceSession) -> bytes:
        return f"screenshot:{self.current}".encode("utf-8")

    def get_page_source(self, session: DeviceSession) -> str:
        return self.screens[self.current]

    def click(self, session: DeviceSession, strategy: LocatorStrategy, locator: str) -> bool:
        self.calls.append(("click", strategy, locator))
        passed = self.click_results.get(locator, True)
        if passed:
            self._move(locator)
        return passed

    def input(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, text: str) -> bool:
        self.calls.append(("input", strategy, locator, text))
        return self.click_results.get(locator, True)

    def long_press(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, duration_ms: int) -> bool:
        self.calls.append(("long_press", strategy, locator, duration_ms))
        return self.click_results.get(locator, True)

    def tap(self, session: DeviceSession, x: float, y: float, duration_ms: int | None = None) -> bool:
        self.calls.append(("tap", x, y))
        self._move(f"tap:{x:g},{y:g}")
        return True

    def scroll(self, session: DeviceSession, direction: str, distance: float | None = None) -> bool:
        self.calls.append(("scroll", direction))
        self._move(f"scroll:{direction}")
        return True

    def back(self, session: DeviceSession) -> bool:
        self.calls.append(("back",))
        if self.back_result:
            self._move("back")
        return self.back_result

    def restart_app(self, session: DeviceSession, app_package: str) -> None:
        self.calls.append(("restart_app", app_package))
        if self.restart_error is not None:
            raise self.restart_error
        self.current = self.start

    def clear_app_data(self, session: DeviceSession, app_package: str) -> None:
        self.calls.append(("clear_app_data", app_package))

    def close_session(self, session: DeviceSession) -> None:
        self.closed.append(session.session_id)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def _move(self, key: str) -> None:
        target = self.transitions.get(key)
        if target is not None:
            self.current = target


class ScriptedDecisionClient(DecisionModelClient):
    """Replays queued model replies; dicts are serialised, strings returned raw, exceptions raised."""

    provider_name = "scripted"

    def __init__(self, responses: list[Any] | None = None, default: Any = None) -> None:
        super().__init__()
        self.responses = list(responses or [])
        self.default = default
        self.contexts: list[dict[str, Any]] = []

    def generate_action(self, context: dict[str, Any]) -> dict[str, Any]:
        self.contexts.append(context)
        return super().generate_action(context)

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return item
        return json.dumps(item, ensure_ascii=False)


class RecordingAlertSink(AlertSink):
    def __init__(self) -> None:
        self.alerts: list[dict[str, Any]] = []

    def raise_alert(self, kind: str, severity: str, message: str, payload: dict[str, Any]) -> None:
        self.alerts.append({"kind": kind, "severity": severity, "message": message, "payload": payload})

    def kinds(self) -> list[str]:
        return [alert["kind"] for alert in self.alerts]


def decision(action_type: str = "CLICK", confidence: float = 0.9, **params: Any) -> dict[str, Any]:
    if not params and action_type in ("CLICK", "LONG_PRESS"):
        params = {"target": "Settings"}
    return {
        "actionPlan": {
            "actionType": action_type,
            "params": params,
            "description": f"{action_type.lower()} step",
            "confidence": confidence,
        },
        "reasoning": "scripted",
    }


def make_config(
    root: str | Path,
    *,
    coverage: dict[str, Any] | None = None,
    seed_actions: list[dict[str, Any]] | None = None,
    **sections: Any,
) -> TraversalConfig:
    payload: dict[str, Any] = {
        "bootstrap": {"max_attempts": 3, "backoff_seconds": 0},
        "settle": {
            "verify_seconds": 0,
            "ui_undo_seconds": 0,
            "app_restart_seconds": 0,
            "clean_restart_seconds": 0,
        },
        "artifacts_root": str(root),
        "tasks": [
            {
                "task_id": "demo",
                "app_package": APP_PACKAGE,
                "app_version_id": "1.0.0",
                "coverage": {"timeout_seconds": None, "max_actions": 20, **(coverage or {})},
                "seed_actions": seed_actions or [],
            }
        ],
    }
    payload.update(sections)
    return TraversalConfig.model_validate(payload)


def require_reachable_appium(config: TraversalConfig) -> None:
    status_url = config.device.appium_server_url.rstrip("/") + "/status"
    try:
        with request.urlopen(status_url, timeout=2):
            return
    except (error.URLError, TimeoutError) as exc:
        pytest.skip(f"Appium server is not reachable at {config.device.appium_server_url}: {exc}")


def require_llm_credentials(config: TraversalConfig) -> None:
    provider = (config.decision_model.provider or os.getenv("LLM_PROVIDER", "openai")).lower()
    key_name = {"openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY", "gemini": "GEMINI_API_KEY"}.get(provider)
    if key_name and not os.getenv(key_name):
        pytest.skip(f"{key_name} is required for live traversal runs")
