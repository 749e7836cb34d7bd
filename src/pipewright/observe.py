from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

EventHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)

_WARNING_EVENTS = {
    "phase_degraded",
    "gate_skipped",
    "task_failed",
    "executor_attempt_failed",
    "pipeline_failed",
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class LoggingEventHook:
    """Forwards runner events to a standard library logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logging.getLogger("pipewright.events")

    def __call__(self, event: dict[str, Any]) -> None:
        name = str(event.get("event", "event"))
        details = " ".join(
            f"{key}={value}" for key, value in event.items() if key not in {"event", "at"}
        )
        if name in _WARNING_EVENTS or event.get("verdict") == "pass-with-warning":
            level = logging.WARNING
        elif name == "gate_evaluated" and event.get("verdict") == "blocking":
            level = logging.WARNING
        else:
            level = logging.INFO
        self.log.log(level, "%s %s", name, details)


class JsonlEventLog:
    """Appends every event as one JSON line to ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", utcnow_iso())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


def combine_hooks(*hooks: EventHook | None) -> EventHook:
    active = [hook for hook in hooks if hook is not None]

    def _hook(event: dict[str, Any]) -> None:
        for hook in active:
            safe_emit(hook, event)

    return _hook


def safe_emit(hook: EventHook | None, event: dict[str, Any]) -> None:
    """Deliver ``event`` to ``hook``; observation failures never reach the caller."""
    if hook is None:
        return
    try:
        hook(event)
    except Exception:
        logger.warning("event hook failed for %s", event.get("event"), exc_info=True)
