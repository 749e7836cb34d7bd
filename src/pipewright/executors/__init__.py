from pipewright.executors.base import ExecutorGateway, TaskRequest
from pipewright.executors.command import CommandExecutor
from pipewright.executors.resilient import ResilientExecutor, RetryPolicy
from pipewright.executors.router import ExecutorRouter
from pipewright.executors.scripted import ScriptedExecutor

__all__ = [
    "CommandExecutor",
    "ExecutorGateway",
    "ExecutorRouter",
    "ResilientExecutor",
    "RetryPolicy",
    "ScriptedExecutor",
    "TaskRequest",
]
