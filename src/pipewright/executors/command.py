from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pipewright.errors import TaskExecutionError
from pipewright.executors.base import ExecutorEventHook, ExecutorGateway, TaskRequest
from pipewright.observe import safe_emit


class CommandExecutor(ExecutorGateway):
    """Runs an external agent command per task.

    The request is written to stdin as JSON. The result is the last line of
    stdout that parses as a JSON object, or the whole of stdout when it is a
    single JSON document. ``{task}`` and ``{executor}`` placeholders in the
    command are substituted per request.
    """

    def __init__(
        self,
        command: list[str],
        *,
        working_directory: Path | None = None,
        event_hook: ExecutorEventHook | None = None,
        name: str = "command",
    ) -> None:
        if not command:
            raise ValueError("CommandExecutor requires a non-empty command.")
        self.command = list(command)
        self.working_directory = working_directory
        self.event_hook = event_hook
        self.name = name

    def _emit(self, payload: dict[str, Any]) -> None:
        safe_emit(self.event_hook, payload)

    def build_command(self, request: TaskRequest) -> list[str]:
        return [
            part.replace("{task}", request.task).replace("{executor}", request.executor)
            for part in self.command
        ]

    @staticmethod
    def parse_result(stdout: str) -> dict[str, Any] | None:
        for raw_line in reversed(stdout.splitlines()):
            line = raw_line.strip()
            if not (line.startswith("{") and line.endswith("}")):
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        try:
            parsed = json.loads(stdout)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    async def submit(self, request: TaskRequest) -> Mapping[str, Any]:
        command = self.build_command(request)
        self._emit(
            {
                "event": "command_start",
                "executor": self.name,
                "task": request.task,
                "command": command[:4],
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TaskExecutionError(
                f"Executor binary not found: {command[0]}",
                task=request.task,
                executor=request.executor,
                retriable=False,
            ) from exc

        stdin_payload = json.dumps(request.to_dict(), ensure_ascii=False).encode("utf-8")
        try:
            stdout_raw, stderr_raw = await process.communicate(stdin_payload)
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace").strip()
        self._emit(
            {
                "event": "command_exit",
                "executor": self.name,
                "task": request.task,
                "exit_code": process.returncode,
                "stderr": stderr[:400],
            }
        )
        if process.returncode != 0:
            raise TaskExecutionError(
                f"Executor command failed with exit code {process.returncode}: {stderr}",
                task=request.task,
                executor=request.executor,
                exit_code=process.returncode,
                retriable=True,
            )

        result = self.parse_result(stdout)
        if result is None:
            self._emit(
                {"event": "command_parse_failed", "task": request.task, "stdout": stdout[-200:]}
            )
            raise TaskExecutionError(
                "Executor command produced no JSON result object.",
                task=request.task,
                executor=request.executor,
                retriable=True,
            )
        return result
