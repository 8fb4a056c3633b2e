from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from traversal.core.models import ActionType

DEFAULT_ALLOWED_ACTIONS = [
    ActionType.CLICK,
    ActionType.INPUT,
    ActionType.SCROLL,
    ActionType.NAVIGATE,
]

DEFAULT_SENSITIVE_KEYWORDS = [
    "删除",
    "卸载",
    "支付",
    "购买",
    "转账",
    "注销",
    "退出登录",
    "清除数据",
    "delete",
    "uninstall",
    "pay",
    "purchase",
    "transfer",
    "logout",
    "sign out",
]


def _normalize_actions(value: list[Any] | None) -> list[ActionType] | None:
    if value is None:
        return None
    normalized: list[ActionType] = []
    invalid: list[str] = []
    for item in value:
        try:
            normalized.append(ActionType.parse(item))
        except ValueError:
            invalid.append(str(item))
    if invalid:
        raise ValueError(f"Unsupported action types: {', '.join(invalid)}")
    return normalized


class DeviceConfig(BaseModel):
    appium_server_url: str = "http://127.0.0.1:4723"
    platform_name: str = "Android"
    automation_name: str = "UiAutomator2"
    new_command_timeout_seconds: int = 300


class DecisionModelConfig(BaseModel):
    provider: str | None = None
    model: str | None = None
    endpoint: str | None = None
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout_seconds: float = 30
    history_size: int = 5

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.lower()
        if normalized not in {"openai", "anthropic", "gemini"}:
            raise ValueError(f"Unsupported decision model provider: {value}")
        return normalized


class TimeoutConfig(BaseModel):
    bootstrap_seconds: float = 180
    transition_seconds: float = 30


class BootstrapConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)


class SettleConfig(BaseModel):
    verify_seconds: float = 0.5
    ui_undo_seconds: float = 1.0
    app_restart_seconds: float = 3.0
    clean_restart_seconds: float = 5.0


class SafetyConfig(BaseModel):
    allowed_actions: list[ActionType] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ACTIONS))
    confidence_floor: float = Field(default=0.3, ge=0, le=1)
    max_input_length: int = 1000
    coordinate_bound: float = 10000
    sensitive_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_KEYWORDS))

    @field_validator("allowed_actions", mode="before")
    @classmethod
    def validate_allowed_actions(cls, value: list[Any]) -> list[ActionType]:
        return _normalize_actions(value) or []


class LocatorConfig(BaseModel):
    max_candidates: int = 5
    history_window: int = 10
    historical_threshold: float = 80.0


class CoverageConfig(BaseModel):
    timeout_seconds: float | None = 1800
    max_actions: int | None = 200
    max_depth: int | None = None
    blacklist_paths: list[str] = Field(default_factory=list)


class TaskDefinition(BaseModel):
    task_id: str
    app_package: str
    app_version_id: str = ""
    coverage: CoverageConfig = Field(default_factory=CoverageConfig)
    allowed_actions: list[ActionType] | None = None
    seed_actions: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("allowed_actions", mode="before")
    @classmethod
    def validate_allowed_actions(cls, value: list[Any] | None) -> list[ActionType] | None:
        return _normalize_actions(value)


class TraversalConfig(BaseModel):
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    decision_model: DecisionModelConfig = Field(default_factory=DecisionModelConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    settle: SettleConfig = Field(default_factory=SettleConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    locators: LocatorConfig = Field(default_factory=LocatorConfig)
    artifacts_root: str = "artifacts"
    tasks: list[TaskDefinition] = Field(default_factory=list)

    def get_task(self, task_id: str) -> TaskDefinition:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        raise KeyError(f"Unknown task id: {task_id}")
