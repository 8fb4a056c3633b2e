from __future__ import annotations

import json
from pathlib import Path

from traversal.config.schema import TraversalConfig


class ConfigLoader:
    """Loads and validates the JSON traversal configuration."""

    @staticmethod
    def load(path: str | Path) -> TraversalConfig:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return TraversalConfig.model_validate(payload)
