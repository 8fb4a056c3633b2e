from __future__ import annotations

import hashlib
import io
import json
import logging
from typing import Any

from PIL import Image, UnidentifiedImageError

from traversal.core.models import ScreenCapture, ScreenSignature, VisionObservation
from traversal.logging.artifacts import ArtifactManager
from traversal.utils.dom_extract import node_class, parse_page_source

log = logging.getLogger(__name__)

STRUCTURAL_ATTRIBUTES = (
    "resource-id",
    "content-desc",
    "text",
    "checkable",
    "clickable",
    "enabled",
    "focusable",
    "long-clickable",
    "scrollable",
    "selected",
)
SIGNATURE_LENGTH = 16
PRIMARY_TEXT_LIMIT = 5
PRIMARY_TEXT_DEPTH = 25


def hash_bytes(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def hash_text(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def normalize_dom(node: Any) -> Any:
    """Keeps only the structural allow-list so positional noise cannot change the hash."""

    if not isinstance(node, dict):
        return None
    normalized: dict[str, Any] = {"class": node_class(node)}
    for attribute in STRUCTURAL_ATTRIBUTES:
        value = node.get(attribute)
        if value not in (None, ""):
            normalized[attribute] = str(value)
    children = [normalize_dom(child) for child in node.get("children") or []]
    if children:
        normalized["children"] = children
    return normalized


def dom_hash(tree: dict[str, Any]) -> str:
    return hash_text(json.dumps(normalize_dom(tree), sort_keys=True, ensure_ascii=False))


def extract_primary_text(tree: dict[str, Any], limit: int = PRIMARY_TEXT_LIMIT, max_depth: int = PRIMARY_TEXT_DEPTH) -> str:
    collected: list[str] = []

    def visit(node: Any, depth: int) -> None:
        if len(collected) >= limit or depth > max_depth or not isinstance(node, dict):
            return
        for key in ("text", "content-desc"):
            value = str(node.get(key) or "").strip()
            if value and value not in collected:
                collected.append(value)
                if len(collected) >= limit:
                    return
        for child in node.get("children") or []:
            visit(child, depth + 1)

    visit(tree, 0)
    return " | ".join(collected[:limit])


def image_size(screenshot: bytes) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(screenshot)) as image:
            return image.size
    except (UnidentifiedImageError, OSError):
        log.debug("Screenshot could not be decoded; recording zero dimensions")
        return 0, 0


class ScreenFingerprinter:
    """Turns a screenshot, DOM tree and primary text into a stable screen signature."""

    def __init__(self, artifact_manager: ArtifactManager | None = None) -> None:
        self.artifact_manager = artifact_manager

    @staticmethod
    def fingerprint(screenshot: bytes, dom_tree: dict[str, Any] | str, primary_text: str) -> str:
        tree = parse_page_source(dom_tree)
        combined = f"{hash_bytes(screenshot)}:{dom_hash(tree)}:{primary_text}"
        return hash_text(combined)[:SIGNATURE_LENGTH]

    def capture(
        self,
        run_id: str,
        screenshot: bytes,
        page_source: str | dict[str, Any],
        vision: tuple[VisionObservation, ...] = (),
    ) -> ScreenCapture:
        tree = parse_page_source(page_source)
        primary_text = extract_primary_text(tree)
        signature = self.fingerprint(screenshot, tree, primary_text)
        width, height = image_size(screenshot)

        screenshot_path = ""
        dom_path = ""
        if self.artifact_manager is not None:
            screenshot_path = str(self.artifact_manager.write_screenshot(run_id, signature, screenshot))
            raw_source = page_source if isinstance(page_source, str) else json.dumps(page_source, ensure_ascii=False)
            dom_path = str(self.artifact_manager.write_dom_snapshot(run_id, signature, raw_source))

        return ScreenCapture(
            signature=ScreenSignature(
                signature=signature,
                screenshot_path=screenshot_path,
                dom_path=dom_path,
                width=width,
                height=height,
                primary_text=primary_text,
                screenshot_hash=hash_bytes(screenshot),
                dom_hash=dom_hash(tree),
            ),
            dom=tree,
            screenshot=screenshot,
            vision=vision,
        )
