from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pipewright.errors import TaskExecutionError
from pipewright.executors.base import ExecutorGateway, TaskRequest


class ExecutorRouter(ExecutorGateway):
    """Dispatches each request to the gateway registered for its executor id."""

    def __init__(
        self,
        routes: Mapping[str, ExecutorGateway] | None = None,
        *,
        default: ExecutorGateway | None = None,
    ) -> None:
        self.routes: dict[str, ExecutorGateway] = dict(routes or {})
        self.default = default

    def register(self, executor_id: str, gateway: ExecutorGateway) -> None:
        self.routes[executor_id] = gateway

    def resolve(self, executor_id: str) -> ExecutorGateway:
        gateway = self.routes.get(executor_id, self.default)
        if gateway is None:
            raise TaskExecutionError(
                f"No executor registered for id '{executor_id}'.",
                executor=executor_id,
                retriable=False,
            )
        return gateway

    async def submit(self, request: TaskRequest) -> Mapping[str, Any]:
        return await self.resolve(request.executor).submit(request)
