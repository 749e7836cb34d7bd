from __future__ import annotations

import asyncio
import copy
import inspect
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from pipewright.executors.base import ExecutorGateway, TaskRequest

ScriptedResponse = (
    Mapping[str, Any]
    | Sequence[Any]
    | BaseException
    | Callable[[TaskRequest], Any]
)


class ScriptedExecutor(ExecutorGateway):
    """Deterministic executor for dry runs and tests.

    Responses are keyed by task name. A mapping is returned as is, a sequence
    yields one entry per call (the last entry repeats), an exception instance
    is raised, and a callable receives the request and returns any of those
    (or an awaitable of one). Scripted payloads are returned verbatim; tasks
    without a scripted response get the minimal payload their output schema
    describes.
    """

    def __init__(
        self,
        responses: Mapping[str, ScriptedResponse] | None = None,
        *,
        delays: Mapping[str, float] | None = None,
        fill_defaults: bool = True,
    ) -> None:
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.fill_defaults = fill_defaults
        self.calls: list[TaskRequest] = []
        self._call_counts: dict[str, int] = defaultdict(int)

    def calls_for(self, task: str) -> list[TaskRequest]:
        return [request for request in self.calls if request.task == task]

    async def _materialize(self, response: Any, request: TaskRequest, call_index: int) -> Any:
        if callable(response) and not isinstance(response, Mapping):
            response = response(request)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Sequence) and not isinstance(response, (str, bytes)):
            if not response:
                return {}
            entry = response[min(call_index, len(response) - 1)]
            return await self._materialize(entry, request, call_index)
        return copy.deepcopy(response)

    async def submit(self, request: TaskRequest) -> Mapping[str, Any]:
        self.calls.append(request)
        call_index = self._call_counts[request.task]
        self._call_counts[request.task] += 1

        delay = self.delays.get(request.task, 0.0)
        if delay:
            await asyncio.sleep(delay)

        if request.task not in self.responses:
            if not self.fill_defaults:
                return {}
            return request.schema.example()

        return await self._materialize(self.responses[request.task], request, call_index)
