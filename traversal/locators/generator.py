from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Any, Iterable

from traversal.core.fingerprint import hash_text
from traversal.core.models import (
    ElementDescriptor,
    LocatorCandidate,
    LocatorSource,
    LocatorStrategy,
    VisionObservation,
)

TIMESTAMP_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}|\d{2}:\d{2}:\d{2}|\d{13}|\d{10}")
UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
RANDOM_PATTERN = re.compile(r"\d{6,}")

MAX_CANDIDATES = 5
MAX_HISTORICAL = 2
HISTORICAL_THRESHOLD = 80.0
VISION_TEXT_CONSISTENCY = 0.8

SCORES = {
    LocatorStrategy.ID: (0.95, 0.7),
    LocatorStrategy.TEXT: (0.8, 0.5),
    LocatorStrategy.ACCESSIBILITY_ID: (0.85, 0.6),
}
XPATH_SCORE = 0.6
VISION_TEXT_SCORE = 0.9
VISION_TEXT_INCONSISTENT_SCORE = 0.75
VISION_REGION_SCORE = 0.7
HISTORICAL_SCORE = 0.85


def detect_dynamic(value: str | None) -> dict[str, bool]:
    """Flags values that are likely to change between runs."""

    if not value:
        return {}
    flags: dict[str, bool] = {}
    if TIMESTAMP_PATTERN.search(value):
        flags["hasTimestamp"] = True
    if UUID_PATTERN.search(value):
        flags["hasUUID"] = True
    if RANDOM_PATTERN.search(value):
        flags["hasPotentialRandom"] = True
    if flags:
        flags["isDynamic"] = True
    return flags


def element_key(element: ElementDescriptor) -> str:
    """Stable identity for an element across screens of the same app version."""

    parts = [
        element.element_type,
        element.resource_id or "",
        element.content_desc or "",
        element.xpath or "",
    ]
    if not element.resource_id and not element.content_desc:
        parts.append(element.text or "")
    return hash_text("|".join(parts))[:16]


def candidate_id(key: str, strategy: LocatorStrategy, value: str) -> str:
    return hash_text(f"{key}:{strategy.value}:{value}")[:16]


class LocatorGenerator:
    """Produces ranked locator candidates for one UI element."""

    def __init__(self, max_candidates: int = MAX_CANDIDATES, historical_threshold: float = HISTORICAL_THRESHOLD) -> None:
        self.max_candidates = max_candidates
        self.historical_threshold = historical_threshold

    def generate(
        self,
        element: ElementDescriptor,
        vision: VisionObservation | None = None,
        historical: Iterable[LocatorCandidate] = (),
    ) -> list[LocatorCandidate]:
        key = element_key(element)
        candidates: list[LocatorCandidate] = []

        for strategy, value in (
            (LocatorStrategy.ID, element.resource_id),
            (LocatorStrategy.TEXT, element.text),
            (LocatorStrategy.ACCESSIBILITY_ID, element.content_desc),
        ):
            if not value:
                continue
            flags = detect_dynamic(value)
            stable, dynamic = SCORES[strategy]
            candidates.append(
                self._candidate(key, strategy, value, dynamic if flags else stable, LocatorSource.DOM, flags)
            )

        if element.xpath:
            candidates.append(
                self._candidate(key, LocatorStrategy.XPATH, element.xpath, XPATH_SCORE, LocatorSource.DOM, {"isXPath": True})
            )

        if vision is not None:
            candidates.extend(self._vision_candidates(key, element, vision))

        carried = [
            item for item in historical if item.success_rate > self.historical_threshold
        ][:MAX_HISTORICAL]
        for item in carried:
            candidates.append(
                self._candidate(
                    key,
                    item.strategy,
                    item.value,
                    HISTORICAL_SCORE,
                    LocatorSource.HISTORICAL,
                    dict(item.dynamic_flags),
                    success_rate=item.success_rate,
                )
            )

        candidates = self._dedupe(candidates)
        candidates.sort(key=lambda item: item.score, reverse=True)
        ranked = candidates[: self.max_candidates]
        for index, item in enumerate(ranked):
            item.is_primary = index == 0
        return ranked

    def _vision_candidates(
        self, key: str, element: ElementDescriptor, vision: VisionObservation
    ) -> list[LocatorCandidate]:
        found: list[LocatorCandidate] = []
        if vision.text:
            consistent = _text_consistent(vision.text, element.text)
            found.append(
                self._candidate(
                    key,
                    LocatorStrategy.TEXT,
                    vision.text,
                    VISION_TEXT_SCORE if consistent else VISION_TEXT_INCONSISTENT_SCORE,
                    LocatorSource.VISION,
                    {**detect_dynamic(vision.text), "visionConfidence": vision.confidence},
                )
            )
        if vision.bbox is not None:
            bbox = vision.bbox
            value = f"{bbox.x:g},{bbox.y:g},{bbox.width:g},{bbox.height:g}"
            found.append(
                self._candidate(
                    key,
                    LocatorStrategy.IMAGE_TEMPLATE,
                    value,
                    VISION_REGION_SCORE,
                    LocatorSource.VISION,
                    {"bbox": bbox.to_payload()},
                )
            )
        return found

    @staticmethod
    def _candidate(
        key: str,
        strategy: LocatorStrategy,
        value: str,
        score: float,
        source: LocatorSource,
        flags: dict[str, Any],
        success_rate: float = 0.0,
    ) -> LocatorCandidate:
        return LocatorCandidate(
            candidate_id=candidate_id(key, strategy, value),
            element_key=key,
            strategy=strategy,
            value=value,
            score=score,
            source=source,
            dynamic_flags=flags,
            success_rate=success_rate,
        )

    @staticmethod
    def _dedupe(candidates: list[LocatorCandidate]) -> list[LocatorCandidate]:
        best: dict[str, LocatorCandidate] = {}
        for item in candidates:
            current = best.get(item.candidate_id)
            if current is None or item.score > current.score:
                best[item.candidate_id] = item
        return list(best.values())


def _text_consistent(vision_text: str, dom_text: str | None) -> bool:
    if not dom_text:
        return False
    left, right = vision_text.strip().lower(), dom_text.strip().lower()
    if left in right or right in left:
        return True
    return SequenceMatcher(a=left, b=right).ratio() >= VISION_TEXT_CONSISTENCY
