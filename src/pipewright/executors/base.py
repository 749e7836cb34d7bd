from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pipewright.models import OutputSchema

ExecutorEventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class TaskRequest:
    task: str
    executor: str
    payload: Mapping[str, Any]
    schema: OutputSchema
    title: str = ""
    phase: str = ""
    run_id: str = ""
    iteration: int | None = None
    deadline_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "executor": self.executor,
            "title": self.title,
            "phase": self.phase,
            "run_id": self.run_id,
            "iteration": self.iteration,
            "deadline_seconds": self.deadline_seconds,
            "input": dict(self.payload),
            "output_schema": self.schema.to_dict(),
        }


class ExecutorGateway(ABC):
    @abstractmethod
    async def submit(self, request: TaskRequest) -> Mapping[str, Any]:
        """Run one task and return its raw result object."""
