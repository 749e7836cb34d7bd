from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pipewright.errors import PipewrightError
from pipewright.models import PipelineResult

logger = logging.getLogger(__name__)
_RUN_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class RunStoreError(PipewrightError):
    """Raised when a stored run cannot be read or written."""


class RunStore:
    """Keeps one JSON document per finished run under ``<state_dir>/runs``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.runs_dir = state_dir / "runs"

    def path_for(self, run_id: str) -> Path:
        if not _RUN_ID.match(run_id):
            raise RunStoreError(f"Invalid run id: {run_id!r}")
        return self.runs_dir / f"{run_id}.json"

    def events_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.events.jsonl"

    def save(self, result: PipelineResult) -> Path:
        target = self.path_for(result.run_id)
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str)
        fd, tmp_name = tempfile.mkstemp(prefix=".run-", suffix=".json", dir=self.runs_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized + "\n")
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def load(self, run_id: str) -> PipelineResult:
        path = self.path_for(run_id)
        if not path.exists():
            raise RunStoreError(f"No stored run named {run_id!r} in {self.runs_dir}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStoreError(f"Stored run {path} is not valid JSON: {exc}") from exc
        return PipelineResult.from_dict(data)

    def list_runs(self) -> list[dict[str, Any]]:
        if not self.runs_dir.exists():
            return []
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.runs_dir.glob("*.json")):
            if path.name.startswith("."):
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("skipping unreadable run record %s", path)
                continue
            summaries.append(
                {
                    "run_id": data.get("run_id", path.stem),
                    "pipeline": data.get("pipeline", ""),
                    "success": bool(data.get("success")),
                    "converged": data.get("converged"),
                    "started_at": data.get("started_at", ""),
                    "artifacts": len(data.get("artifacts", [])),
                }
            )
        summaries.sort(key=lambda item: (item["started_at"], item["run_id"]))
        return summaries
