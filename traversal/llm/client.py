from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from typing import Any
from urllib import error, request

from google import genai
from google.genai import types as genai_types

from traversal.config.schema import DecisionModelConfig
from traversal.core.exceptions import DecisionClientError
from traversal.llm.parser import parse_decision_response
from traversal.llm.prompts import SYSTEM_PROMPT, build_user_prompt


class DecisionModelClient(ABC):
    """Provider-neutral interface for choosing the next exploration action."""

    provider_name = "unknown"

    def __init__(self, config: DecisionModelConfig | None = None) -> None:
        self.config = config or DecisionModelConfig()
        self.last_usage: dict[str, int] = {}

    def generate_action(self, context: dict[str, Any]) -> dict[str, Any]:
        """Returns ``{"actionPlan": ..., "reasoning": ...}``; raises MalformedDecisionError on non-JSON output."""

        return parse_decision_response(self.complete(SYSTEM_PROMPT, build_user_prompt(context)))

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


class OpenAIDecisionClient(DecisionModelClient):
    provider_name = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, config: DecisionModelConfig | None = None) -> None:
        super().__init__(config)
        self.api_key = api_key
        self.model = self.config.model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        if self.config.endpoint:
            self.endpoint = self.config.endpoint

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        body = {
            "model": self.model,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        response = _post_json(
            self.endpoint,
            body,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_seconds,
        )
        usage = response.get("usage") or {}
        self.last_usage = {
            "prompt_tokens": usage.get("prompt_tokens", 0),
            "completion_tokens": usage.get("completion_tokens", 0),
        }
        return response["choices"][0]["message"]["content"]


class AnthropicDecisionClient(DecisionModelClient):
    provider_name = "anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, config: DecisionModelConfig | None = None) -> None:
        super().__init__(config)
        self.api_key = api_key
        self.model = self.config.model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        body = {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [
                {"role": "user", "content": user_prompt},
            ],
        }
        response = _post_json(
            self.endpoint,
            body,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout_seconds,
        )
        usage = response.get("usage") or {}
        self.last_usage = {
            "prompt_tokens": usage.get("input_tokens", 0),
            "completion_tokens": usage.get("output_tokens", 0),
        }
        return "".join(part.get("text", "") for part in response.get("content", []) if isinstance(part, dict))


class GeminiDecisionClient(DecisionModelClient):
    provider_name = "gemini"

    def __init__(self, api_key: str, config: DecisionModelConfig | None = None) -> None:
        super().__init__(config)
        self.model = self.config.model or os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self._client = genai.Client(api_key=api_key)

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=user_prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.config.temperature,
                    max_output_tokens=self.config.max_tokens,
                    response_mime_type="application/json",
                ),
            )
        except Exception as exc:  # noqa: BLE001 - the SDK raises several transport error types.
            raise DecisionClientError(f"Gemini request failed: {exc}") from exc
        usage = response.usage_metadata
        if usage is not None:
            self.last_usage = {
                "prompt_tokens": usage.prompt_token_count or 0,
                "completion_tokens": usage.candidates_token_count or 0,
            }
        # an empty reply is malformed output for the parser, not a transport failure
        return response.text or ""


def create_decision_client(config: DecisionModelConfig | None = None) -> DecisionModelClient:
    config = config or DecisionModelConfig()
    provider = (config.provider or os.getenv("LLM_PROVIDER", "openai")).lower()
    if provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise DecisionClientError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        return OpenAIDecisionClient(api_key, config)
    if provider == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise DecisionClientError("ANTHROPIC_API_KEY is required when LLM_PROVIDER=anthropic")
        return AnthropicDecisionClient(api_key, config)
    if provider == "gemini":
        api_key = os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise DecisionClientError("GEMINI_API_KEY is required when LLM_PROVIDER=gemini")
        return GeminiDecisionClient(api_key, config)
    raise DecisionClientError(f"Unsupported LLM provider: {provider}")


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float = 30) -> dict[str, Any]:
    encoded = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise DecisionClientError(f"Decision request failed with status {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise DecisionClientError(f"Decision request could not be completed: {exc.reason}") from exc
    return json.loads(raw)
