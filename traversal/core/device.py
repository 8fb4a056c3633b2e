from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from appium import webdriver
from appium.options.common import AppiumOptions
from appium.webdriver.common.appiumby import AppiumBy
from selenium.common.exceptions import WebDriverException

from traversal.config.schema import DeviceConfig
from traversal.core.models import LocatorStrategy

log = logging.getLogger(__name__)

SCROLL_DIRECTIONS = ("up", "down", "left", "right")


@dataclass(slots=True)
class DeviceSession:
    """Handle for one live driver session, owned by a single run context."""

    session_id: str
    device_id: str
    app_package: str
    handle: Any = field(default=None, repr=False)


class DeviceDriver(ABC):
    """Narrow device capability consumed by the traversal engine."""

    @abstractmethod
    def create_session(self, device_id: str, app_package: str) -> DeviceSession:
        raise NotImplementedError

    @abstractmethod
    def launch_app(self, session: DeviceSession, app_package: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def take_screenshot(self, session: DeviceSession) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_page_source(self, session: DeviceSession) -> str:
        raise NotImplementedError

    @abstractmethod
    def click(self, session: DeviceSession, strategy: LocatorStrategy, locator: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def input(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, text: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def tap(self, session: DeviceSession, x: float, y: float, duration_ms: int | None = None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def scroll(self, session: DeviceSession, direction: str, distance: float | None = None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def back(self, session: DeviceSession) -> bool:
        raise NotImplementedError

    @abstractmethod
    def restart_app(self, session: DeviceSession, app_package: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_app_data(self, session: DeviceSession, app_package: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def close_session(self, session: DeviceSession) -> None:
        raise NotImplementedError

    def long_press(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, duration_ms: int) -> bool:
        return False

    def swipe(self, session: DeviceSession, direction: str, distance: float | None = None) -> bool:
        opposite = {"up": "down", "down": "up", "left": "right", "right": "left"}
        return self.scroll(session, opposite.get(direction, direction), distance)


class AppiumDeviceDriver(DeviceDriver):
    """Drives Android devices through an Appium server using UiAutomator2."""

    def __init__(self, device_config: DeviceConfig) -> None:
        self.device_config = device_config

    def create_session(self, device_id: str, app_package: str) -> DeviceSession:
        options = AppiumOptions()
        options.load_capabilities(
            {
                "platformName": self.device_config.platform_name,
                "appium:automationName": self.device_config.automation_name,
                "appium:deviceName": device_id,
                "appium:udid": device_id,
                "appium:appPackage": app_package,
                "appium:noReset": True,
                "appium:autoGrantPermissions": True,
                "appium:disableWindowAnimation": True,
                "appium:newCommandTimeout": self.device_config.new_command_timeout_seconds,
            }
        )
        driver = webdriver.Remote(self.device_config.appium_server_url, options=options)
        log.info("Appium session %s created for device %s", driver.session_id, device_id)
        return DeviceSession(
            session_id=driver.session_id,
            device_id=device_id,
            app_package=app_package,
            handle=driver,
        )

    def launch_app(self, session: DeviceSession, app_package: str) -> None:
        session.handle.activate_app(app_package)

    def take_screenshot(self, session: DeviceSession) -> bytes:
        return session.handle.get_screenshot_as_png()

    def get_page_source(self, session: DeviceSession) -> str:
        return session.handle.page_source

    def click(self, session: DeviceSession, strategy: LocatorStrategy, locator: str) -> bool:
        try:
            session.handle.find_element(*self._by(strategy, locator)).click()
            return True
        except WebDriverException as exc:
            log.warning("Click failed for %s=%s: %s", strategy.value, locator, exc.msg)
            return False

    def input(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, text: str) -> bool:
        try:
            element = session.handle.find_element(*self._by(strategy, locator))
            element.clear()
            element.send_keys(text)
            return True
        except WebDriverException as exc:
            log.warning("Input failed for %s=%s: %s", strategy.value, locator, exc.msg)
            return False

    def long_press(self, session: DeviceSession, strategy: LocatorStrategy, locator: str, duration_ms: int) -> bool:
        try:
            element = session.handle.find_element(*self._by(strategy, locator))
            rect = element.rect
            center = (int(rect["x"] + rect["width"] / 2), int(rect["y"] + rect["height"] / 2))
            session.handle.tap([center], duration_ms)
            return True
        except WebDriverException as exc:
            log.warning("Long press failed for %s=%s: %s", strategy.value, locator, exc.msg)
            return False

    def tap(self, session: DeviceSession, x: float, y: float, duration_ms: int | None = None) -> bool:
        try:
            session.handle.tap([(int(x), int(y))], duration_ms)
            return True
        except WebDriverException as exc:
            log.warning("Tap at (%s, %s) failed: %s", x, y, exc.msg)
            return False

    def scroll(self, session: DeviceSession, direction: str, distance: float | None = None) -> bool:
        direction = direction.lower()
        if direction not in SCROLL_DIRECTIONS:
            log.warning("Unsupported scroll direction: %s", direction)
            return False
        try:
            size = session.handle.get_window_size()
            width, height = size["width"], size["height"]
            start_x, start_y = width / 2, height / 2
            end_x, end_y = start_x, start_y
            span = distance or height / 3
            if direction == "up":
                start_y = height * 0.8
                end_y = start_y - span
            elif direction == "down":
                start_y = height * 0.2
                end_y = start_y + span
            elif direction == "left":
                start_x = width * 0.8
                end_x = start_x - span
            else:
                start_x = width * 0.2
                end_x = start_x + span
            session.handle.swipe(int(start_x), int(start_y), int(end_x), int(end_y), 300)
            return True
        except WebDriverException as exc:
            log.warning("Scroll %s failed: %s", direction, exc.msg)
            return False

    def back(self, session: DeviceSession) -> bool:
        try:
            session.handle.back()
            return True
        except WebDriverException as exc:
            log.warning("Back navigation failed: %s", exc.msg)
            return False

    def restart_app(self, session: DeviceSession, app_package: str) -> None:
        session.handle.terminate_app(app_package)
        session.handle.activate_app(app_package)

    def clear_app_data(self, session: DeviceSession, app_package: str) -> None:
        session.handle.execute_script("mobile: clearApp", {"appId": app_package})

    def close_session(self, session: DeviceSession) -> None:
        try:
            session.handle.quit()
        except WebDriverException as exc:
            log.warning("Closing session %s failed: %s", session.session_id, exc.msg)

    @staticmethod
    def _by(strategy: LocatorStrategy, locator: str) -> tuple[str, str]:
        if strategy is LocatorStrategy.ID:
            return AppiumBy.ID, locator
        if strategy is LocatorStrategy.ACCESSIBILITY_ID:
            return AppiumBy.ACCESSIBILITY_ID, locator
        if strategy is LocatorStrategy.XPATH:
            return AppiumBy.XPATH, locator
        if strategy is LocatorStrategy.TEXT:
            escaped = locator.replace("\\", "\\\\").replace('"', '\\"')
            return AppiumBy.ANDROID_UIAUTOMATOR, f'new UiSelector().text("{escaped}")'
        raise ValueError(f"Strategy {strategy.value} cannot be resolved to a driver locator")
