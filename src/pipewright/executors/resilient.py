from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pipewright.errors import ExecutorTimeoutError, TaskExecutionError
from pipewright.executors.base import ExecutorEventHook, ExecutorGateway, TaskRequest
from pipewright.observe import safe_emit


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientExecutor(ExecutorGateway):
    """Wraps primary/fallback executors with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary: ExecutorGateway,
        retry_policy: RetryPolicy,
        *,
        fallback_name: str | None = None,
        fallback: ExecutorGateway | None = None,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary = primary
        self.fallback_name = fallback_name
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        safe_emit(self.event_hook, event)

    def _attempt_timeout(self, request: TaskRequest) -> float:
        timeout = self.retry_policy.timeout_seconds
        if request.deadline_seconds is not None:
            timeout = min(timeout, max(0.0, request.deadline_seconds))
        return timeout

    async def submit(self, request: TaskRequest) -> Mapping[str, Any]:
        attempts: list[tuple[str, ExecutorGateway]] = [(self.primary_name, self.primary)]
        if self.fallback is not None and self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name or "fallback", self.fallback))

        errors: list[str] = []
        for executor_name, executor in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "executor_retry",
                            "executor": executor_name,
                            "task": request.task,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                timeout = self._attempt_timeout(request)
                try:
                    result = await asyncio.wait_for(executor.submit(request), timeout=timeout)
                except TimeoutError:
                    error: TaskExecutionError = ExecutorTimeoutError(
                        f"Executor request timed out after {timeout:.1f}s",
                        task=request.task,
                        executor=executor_name,
                        retriable=True,
                    )
                    errors.append(f"{executor_name}[{attempt}]: {error}")
                    self._emit(
                        {
                            "event": "executor_attempt_failed",
                            "executor": executor_name,
                            "task": request.task,
                            "attempt": attempt,
                            "error": str(error),
                            "retriable": True,
                        }
                    )
                    continue
                except TaskExecutionError as exc:
                    errors.append(f"{executor_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "executor_attempt_failed",
                            "executor": executor_name,
                            "task": request.task,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{executor_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "executor_attempt_failed",
                            "executor": executor_name,
                            "task": request.task,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue

                if executor_name != self.primary_name:
                    self._emit(
                        {
                            "event": "executor_fallback_success",
                            "executor": executor_name,
                            "task": request.task,
                            "attempt": attempt,
                        }
                    )
                return result

        summary = "; ".join(errors[-6:])
        raise TaskExecutionError(
            f"All executor attempts failed for task '{request.task}'. {summary}",
            task=request.task,
            executor=request.executor,
            retriable=False,
        )
