"""
Build manifest: JSON record of one pipeline invocation, saved atomically after every change.
"""
import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from stagebuild.pipeline.core.atomic import atomic_write
from stagebuild.pipeline.core.types import Artifact, ErrorInfo, Image, StepStatus


class Manifest:
    """Manifest manager."""

    SCHEMA_VERSION = "1.0"

    def __init__(self, manifest_path: Path, *, load: bool = True):
        self.manifest_path = manifest_path
        self.data: Dict[str, Any] = self._empty()
        if load:
            self._load()

    def _empty(self) -> Dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "build": {},
            "states": [],
            "stages": {},
            "artifacts": [],
            "image": None,
            "error": None,
        }

    def _load(self) -> None:
        if self.manifest_path.exists():
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                self.data = json.load(f)

    def save(self) -> None:
        content = json.dumps(self.data, indent=2, ensure_ascii=False)
        atomic_write(content, self.manifest_path)

    def set_build(self, build_id: str, *, recipe_fingerprint: str, context: str, provider: str) -> None:
        self.data["build"] = {
            "build_id": build_id,
            "recipe_fingerprint": recipe_fingerprint,
            "context": context,
            "provider": provider,
            "started_at": now_iso(),
        }

    def record_state(self, state: str, reason: Optional[str] = None) -> None:
        entry: Dict[str, Any] = {"state": state, "at": now_iso()}
        if reason:
            entry["reason"] = reason
        self.data["states"].append(entry)

    @property
    def states(self) -> List[str]:
        return [entry["state"] for entry in self.data["states"]]

    def start_stage(self, name: str, *, base: str, role: str, steps: List[str]) -> None:
        self.data["stages"][name] = {
            "name": name,
            "base": base,
            "role": role,
            "status": "running",
            "started_at": now_iso(),
            "steps": [
                {"index": idx, "instruction": instruction, "status": "pending"}
                for idx, instruction in enumerate(steps)
            ],
        }

    def update_step(
        self,
        stage: str,
        index: int,
        *,
        status: StepStatus,
        cache_key: Optional[str] = None,
        duration_s: Optional[float] = None,
    ) -> None:
        step = self.data["stages"][stage]["steps"][index]
        step["status"] = status
        if cache_key:
            step["cache_key"] = cache_key
        if duration_s is not None:
            step["duration_s"] = round(duration_s, 3)

    def finish_stage(self, name: str, status: StepStatus) -> None:
        stage = self.data["stages"][name]
        stage["status"] = status
        stage["finished_at"] = now_iso()

    def register_artifact(self, artifact: Artifact) -> None:
        self.data["artifacts"].append(asdict(artifact))

    def set_image(self, image: Image) -> None:
        self.data["image"] = {
            "ref": image.ref,
            "location": image.location,
            "config": image.config.to_dict(),
        }

    def set_error(self, error: ErrorInfo) -> None:
        self.data["error"] = asdict(error)

    def finish(self, status: str) -> None:
        self.data["build"]["status"] = status
        self.data["build"]["finished_at"] = now_iso()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
