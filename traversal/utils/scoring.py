from __future__ import annotations

from difflib import SequenceMatcher
from typing import Iterable

from traversal.core.models import ElementDescriptor

MATCH_THRESHOLD = 0.6


def score_elements(target: str, elements: Iterable[ElementDescriptor]) -> list[tuple[float, ElementDescriptor]]:
    """Ranks elements by how closely their text, description or resource name match ``target``."""

    scored: list[tuple[float, ElementDescriptor]] = []
    for element in elements:
        similarity = max(
            _similarity(target, element.text or ""),
            _similarity(target, element.content_desc or ""),
            _similarity(target, _resource_name(element.resource_id)),
        )
        score = similarity + (0.05 if element.clickable else 0.0)
        scored.append((round(score, 4), element))
    scored.sort(key=lambda item: item[0], reverse=True)
    return scored


def match_element(target: str, elements: Iterable[ElementDescriptor]) -> ElementDescriptor | None:
    needle = target.strip()
    if not needle:
        return None
    candidates = list(elements)
    for element in candidates:
        if needle in (element.resource_id, element.content_desc, element.text, element.xpath):
            return element
    ranked = score_elements(needle, candidates)
    if ranked and ranked[0][0] >= MATCH_THRESHOLD:
        return ranked[0][1]
    return None


def _resource_name(resource_id: str | None) -> str:
    if not resource_id:
        return ""
    return resource_id.rsplit("/", 1)[-1].replace("_", " ")


def _similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    left, right = left.lower(), right.lower()
    if left == right:
        return 1.0
    if left in right or right in left:
        return 0.5 + 0.5 * min(len(left), len(right)) / max(len(left), len(right))
    return SequenceMatcher(a=left, b=right).ratio()
