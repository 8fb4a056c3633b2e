from __future__ import annotations

import logging
import time
from enum import Enum

from traversal.config.schema import SettleConfig
from traversal.core.device import DeviceDriver, DeviceSession
from traversal.core.exceptions import RecoveryNotImplementedError, UnrecoverableError

log = logging.getLogger(__name__)


class RecoveryStrategy(str, Enum):
    UI_UNDO = "UI_UNDO"
    APP_RESTART = "APP_RESTART"
    CLEAN_RESTART = "CLEAN_RESTART"
    DEVICE_REBOOT = "DEVICE_REBOOT"


def select_strategy(failed_actions: int) -> RecoveryStrategy:
    """Maps the cumulative failure count of a run to an escalating strategy."""

    if failed_actions <= 3:
        return RecoveryStrategy.UI_UNDO
    if failed_actions <= 6:
        return RecoveryStrategy.APP_RESTART
    if failed_actions <= 10:
        return RecoveryStrategy.CLEAN_RESTART
    return RecoveryStrategy.DEVICE_REBOOT


class RecoveryExecutor:
    """Carries out a recovery strategy against the run's device session."""

    def __init__(self, driver: DeviceDriver, settle: SettleConfig | None = None) -> None:
        self.driver = driver
        self.settle = settle or SettleConfig()

    def execute(self, strategy: RecoveryStrategy, session: DeviceSession | None, app_package: str) -> None:
        if strategy is RecoveryStrategy.DEVICE_REBOOT:
            raise RecoveryNotImplementedError("DEVICE_REBOOT is not implemented")
        if session is None:
            raise UnrecoverableError(f"{strategy.value} requires an active device session")

        log.info("Running recovery strategy %s on session %s", strategy.value, session.session_id)
        try:
            if strategy is RecoveryStrategy.UI_UNDO:
                if not self.driver.back(session):
                    raise UnrecoverableError("back navigation was not accepted by the device")
                delay = self.settle.ui_undo_seconds
            elif strategy is RecoveryStrategy.APP_RESTART:
                self.driver.restart_app(session, app_package)
                delay = self.settle.app_restart_seconds
            else:
                self.driver.clear_app_data(session, app_package)
                self.driver.launch_app(session, app_package)
                delay = self.settle.clean_restart_seconds
        except UnrecoverableError:
            raise
        except Exception as exc:  # noqa: BLE001 - every driver failure during recovery is terminal.
            raise UnrecoverableError(f"{strategy.value} failed: {exc}") from exc

        if delay > 0:
            time.sleep(delay)
