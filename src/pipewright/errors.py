from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pipewright.models import PipelineResult


class PipewrightError(RuntimeError):
    """Base class for every error raised by the orchestration core."""


class DefinitionError(PipewrightError):
    """Raised when a pipeline definition is malformed."""


class TaskExecutionError(PipewrightError):
    """Raised when an executor call fails."""

    def __init__(
        self,
        message: str,
        *,
        task: str | None = None,
        executor: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.task = task
        self.executor = executor
        self.exit_code = exit_code
        self.retriable = retriable


class ExecutorTimeoutError(TaskExecutionError):
    """Raised when an executor call exceeds its configured timeout."""


class SchemaViolation(PipewrightError):
    """Raised when an executor result does not satisfy the task's output contract."""

    def __init__(self, message: str, *, task: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.task = task
        self.field = field


class MissingInput(PipewrightError):
    """Raised when a required input reference resolves to nothing."""

    def __init__(self, message: str, *, phase: str | None = None, reference: str = "") -> None:
        super().__init__(message)
        self.phase = phase
        self.reference = reference


class Cancelled(PipewrightError):
    """Raised when a cancel signal or the run deadline fires during a wait."""


class GateEvaluationError(PipewrightError):
    """Raised when a gate metric cannot be computed from phase output."""

    def __init__(self, message: str, *, gate: str | None = None, phase: str | None = None) -> None:
        super().__init__(message)
        self.gate = gate
        self.phase = phase


class GateAbort(PipewrightError):
    """Raised when a blocking gate receives an abort decision."""

    def __init__(self, message: str, *, gate: str, phase: str, verdict: Any = None) -> None:
        super().__init__(message)
        self.gate = gate
        self.phase = phase
        self.verdict = verdict


class RequiredPhaseFailure(PipewrightError):
    """Wraps the error that made a required phase fail."""

    def __init__(self, phase: str, cause: Exception, *, task: str | None = None) -> None:
        location = f"task '{task}' in phase '{phase}'" if task else f"phase '{phase}'"
        super().__init__(f"Required {location} failed: {cause}")
        self.phase = phase
        self.task = task
        self.cause = cause


class PipelineError(PipewrightError):
    """Raised by the runner when a pipeline aborts; carries the partial result."""

    def __init__(
        self,
        message: str,
        *,
        phase: str | None,
        cause: Exception,
        result: PipelineResult,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.cause = cause
        self.result = result


def describe_error(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": type(exc).__name__, "message": str(exc)}
    for attribute in ("phase", "task", "gate", "field", "reference"):
        value = getattr(exc, attribute, None)
        if value is not None:
            payload[attribute] = value
    cause = getattr(exc, "cause", None)
    if isinstance(cause, BaseException):
        payload["cause"] = describe_error(cause)
    return payload
