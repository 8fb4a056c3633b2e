from __future__ import annotations

from typing import Any

from traversal.utils.dom_extract import build_dom_summary

SYSTEM_PROMPT = """You are an Android UI exploration assistant. Look at the current screen (DOM summary and optional
vision observations) and choose the single next action that is most likely to reach a screen that has not been
visited yet.
Rules:
1. Only return action types from the allowed list.
2. Never trigger destructive or sensitive operations (delete, uninstall, pay, purchase, transfer, logout).
3. Only target elements present in the provided DOM summary or vision observations.
4. For input fields, fill in plausible test data, never real personal or payment data.
5. If nothing on the screen is interactable, return NAVIGATE with direction "back".
6. Rate your confidence in [0, 1] from element visibility and semantic clarity.
Return a single JSON object with no markdown and no code fence, shaped as:
{"actionPlan": {"actionType": "CLICK | INPUT | SCROLL | NAVIGATE | SWIPE | LONG_PRESS",
"params": {"target": "element text, resource id or {\\"x\\": 0, \\"y\\": 0}", "text": "INPUT only",
"direction": "SCROLL/SWIPE/NAVIGATE only"}, "description": "...", "expectedOutcome": "...", "confidence": 0.8},
"reasoning": "...", "screenAnalysis": {"screenType": "...", "keyElements": ["..."], "interactableCount": 0}}"""


def build_user_prompt(context: dict[str, Any]) -> str:
    """Formats the decision context into the sectioned user message."""

    sections: list[str] = ["## Run", f"- run id: {context.get('runId')}"]
    if context.get("screenSignature"):
        sections.append(f"- screen signature: {context['screenSignature']}")
    sections.append("")

    sections.append("## Allowed action types")
    sections.extend(f"- {action}" for action in context.get("allowedActions", []))
    sections.append("")

    history = context.get("history") or []
    if history:
        sections.append("## Recent actions")
        for index, item in enumerate(history, start=1):
            outcome = "ok" if item.get("success") else "failed"
            sections.append(
                f"{index}. [{item.get('timestamp')}] {item.get('actionType')}: {item.get('description')} ({outcome})"
            )
        sections.append("")

    if context.get("intent"):
        sections.append("## Queued intent")
        sections.append(str(context["intent"]))
        sections.append("")

    dom_summary = context.get("domSummary")
    if dom_summary is None and context.get("dom"):
        dom_summary = build_dom_summary(context["dom"])
    if dom_summary:
        sections.append("## Screen DOM")
        sections.append(dom_summary)
        sections.append("")

    vision = context.get("visionSummary") or []
    if vision:
        sections.append("## Vision observations")
        for item in vision:
            sections.append(f"- {item.get('type') or 'element'}: {item.get('text') or ''} {item.get('bbox') or ''}".rstrip())
        sections.append("")

    sections.append("## Task")
    sections.append("Pick the next action that explores an unvisited screen. Avoid screens already visited.")
    return "\n".join(sections)
