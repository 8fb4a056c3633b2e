from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path


class ArtifactManager:
    """Creates and manages screen capture artifact files."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.dom_root = self.root / "dom_snapshots"
        self.screenshot_root = self.root / "screenshots"
        self.run_log_root = self.root / "run_logs"
        self._ensure_structure()

    def _ensure_structure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.dom_root.mkdir(parents=True, exist_ok=True)
        self.screenshot_root.mkdir(parents=True, exist_ok=True)
        self.run_log_root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def timestamp() -> str:
        return datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")

    def write_screenshot(self, run_id: str, signature: str, screenshot: bytes) -> Path:
        path = self.screenshot_root / run_id / f"{signature}.png"
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_bytes(screenshot)
        return path

    def write_dom_snapshot(self, run_id: str, signature: str, page_source: str) -> Path:
        path = self.dom_root / run_id / f"{signature}.xml"
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(page_source, encoding="utf-8")
        return path

    def write_run_log(self, run_id: str, message: str) -> Path:
        path = self.run_log_root / f"{self.timestamp()}_{run_id}.log"
        path.write_text(message, encoding="utf-8")
        return path
