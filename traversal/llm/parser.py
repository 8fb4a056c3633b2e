from __future__ import annotations

import json
from typing import Any

from traversal.core.exceptions import MalformedDecisionError


def strip_code_fence(response: str) -> str:
    text = response.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0].strip()
    return text


def parse_decision_response(response: str) -> dict[str, Any]:
    """Parses the model reply into a JSON object, tolerating a surrounding code fence."""

    text = strip_code_fence(response or "")
    if not text:
        raise MalformedDecisionError("Decision model returned an empty response")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedDecisionError(f"Decision model returned non-JSON output: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MalformedDecisionError("Decision model returned JSON that is not an object")
    return payload
