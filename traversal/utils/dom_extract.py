from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from typing import Any, Iterator

from traversal.core.models import BoundingBox, ElementDescriptor

BOUNDS_PATTERN = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")


def parse_page_source(page_source: str | dict[str, Any]) -> dict[str, Any]:
    """Converts a uiautomator XML dump into a JSON-like node tree.

    Every node keeps its XML attributes, gains a ``tag`` key and a ``children`` list.
    Trees that are already parsed are returned unchanged.
    """

    if isinstance(page_source, dict):
        return page_source
    root = ET.fromstring(page_source)
    return _element_to_node(root)


def _element_to_node(element: ET.Element) -> dict[str, Any]:
    node: dict[str, Any] = dict(element.attrib)
    node["tag"] = element.tag
    node["children"] = [_element_to_node(child) for child in element]
    return node


def parse_bounds(bounds: str | None) -> BoundingBox | None:
    if not bounds:
        return None
    match = BOUNDS_PATTERN.match(bounds.strip())
    if not match:
        return None
    x1, y1, x2, y2 = map(int, match.groups())
    return BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1)


def node_class(node: dict[str, Any]) -> str:
    return str(node.get("class") or node.get("type") or node.get("tag") or "node")


def iter_elements(tree: dict[str, Any]) -> Iterator[ElementDescriptor]:
    """Yields every element below the root with its structural path."""

    if tree.get("tag") == "hierarchy":
        yield from _iter_children(tree, "/hierarchy")
        return
    root_path = f"/{node_class(tree)}"
    yield _descriptor(tree, root_path)
    yield from _iter_children(tree, root_path)


def _iter_children(node: dict[str, Any], path: str) -> Iterator[ElementDescriptor]:
    seen: dict[str, int] = {}
    for child in node.get("children") or []:
        name = node_class(child)
        seen[name] = seen.get(name, 0) + 1
        child_path = f"{path}/{name}[{seen[name]}]"
        yield _descriptor(child, child_path)
        yield from _iter_children(child, child_path)


def _descriptor(node: dict[str, Any], xpath: str) -> ElementDescriptor:
    return ElementDescriptor(
        element_type=node_class(node),
        resource_id=_clean(node.get("resource-id")),
        content_desc=_clean(node.get("content-desc")),
        text=_clean(node.get("text")),
        xpath=xpath,
        bounds=parse_bounds(node.get("bounds")),
        clickable=str(node.get("clickable", "")).lower() == "true",
    )


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def simplify_node(node: Any, max_children: int = 10) -> Any:
    if not isinstance(node, dict):
        return node
    simplified: dict[str, Any] = {"type": node_class(node)}
    if node.get("resource-id"):
        simplified["id"] = node["resource-id"]
    if node.get("text"):
        simplified["text"] = node["text"]
    if node.get("content-desc"):
        simplified["desc"] = node["content-desc"]
    if str(node.get("clickable", "")).lower() == "true":
        simplified["clickable"] = True
    if node.get("bounds"):
        simplified["bounds"] = node["bounds"]
    children = node.get("children") or []
    if children:
        simplified["children"] = [simplify_node(child, max_children) for child in children[:max_children]]
    return simplified


def build_dom_summary(tree: dict[str, Any] | None, max_chars: int = 12000) -> str:
    if not tree:
        return ""
    return json.dumps(simplify_node(tree), ensure_ascii=False, indent=2)[:max_chars]
