from __future__ import annotations

from pathlib import Path

import pytest

from tests.helpers import FakeDeviceDriver, RecordingAlertSink, ScriptedDecisionClient, decision, make_config
from traversal.config.loader import ConfigLoader
from traversal.core.runner import TraversalRunner


@pytest.fixture()
def traversal_config():
    config_path = Path(__file__).resolve().parents[1] / "config" / "traversal.json"
    return ConfigLoader.load(config_path)


@pytest.fixture()
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture()
def driver():
    return FakeDeviceDriver(transitions={"com.example.shop:id/settings": "settings", "back": "home"})


@pytest.fixture()
def decision_client():
    return ScriptedDecisionClient(default=decision("CLICK", target="Settings"))


@pytest.fixture()
def runner_factory(tmp_path, driver, decision_client, alert_sink):
    def build(config=None, **kwargs):
        return TraversalRunner(
            config or make_config(tmp_path),
            kwargs.pop("driver", driver),
            kwargs.pop("decision_client", decision_client),
            alert_sink=alert_sink,
            **kwargs,
        )

    return build
