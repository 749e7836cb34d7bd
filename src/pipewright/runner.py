from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeVar
from uuid import uuid4

from pipewright.approval import ApprovalChannel
from pipewright.bindings import LoopFrame, resolve_inputs
from pipewright.definition import validate_pipeline
from pipewright.errors import (
    Cancelled,
    GateAbort,
    GateEvaluationError,
    MissingInput,
    PipelineError,
    PipewrightError,
    RequiredPhaseFailure,
    SchemaViolation,
    TaskExecutionError,
    describe_error,
)
from pipewright.executors.base import ExecutorGateway, TaskRequest
from pipewright.gates import evaluate_gate, gate_context
from pipewright.ledger import ArtifactLedger
from pipewright.loop import ConvergenceLoop, LoopOutcome
from pipewright.models import (
    Artifact,
    Decision,
    GateRecord,
    GateSpec,
    LoopSpec,
    PhaseMode,
    PhaseSpec,
    PipelineResult,
    PipelineSpec,
    TaskResult,
    TaskSpec,
    Verdict,
)
from pipewright.observe import EventHook, safe_emit, utcnow_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")
RECOVERABLE_ERRORS = (TaskExecutionError, SchemaViolation, MissingInput)
TASK_ERRORS = (TaskExecutionError, SchemaViolation, Cancelled)
TaskFailure = tuple[str, PipewrightError]


@dataclass(slots=True)
class _RunState:
    run_id: str
    spec: PipelineSpec
    params: dict[str, Any]
    cancel: asyncio.Event | None
    deadline: float | None
    started_at: str = field(default_factory=utcnow_iso)
    started_monotonic: float = field(default_factory=time.monotonic)
    outputs: dict[str, Any] = field(default_factory=dict)
    ledger: ArtifactLedger = field(default_factory=ArtifactLedger)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    gates: list[GateRecord] = field(default_factory=list)
    loops: dict[str, dict[str, Any]] = field(default_factory=dict)
    phases: dict[str, str] = field(default_factory=dict)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()


class PipelineRunner:
    """Drives a pipeline definition phase by phase.

    The runner is the single writer of run state: tasks receive resolved,
    read-only payloads and return data which the runner validates, records in
    the artifact ledger, and merges under the phase name. Quality gates run
    after their phase; convergence loops re-run their wrapped phases through
    the same phase machinery.
    """

    def __init__(
        self,
        gateway: ExecutorGateway,
        approvals: ApprovalChannel,
        *,
        event_hook: EventHook | None = None,
        approval_timeout_seconds: float | None = None,
    ) -> None:
        self.gateway = gateway
        self.approvals = approvals
        self.event_hook = event_hook
        self.approval_timeout_seconds = approval_timeout_seconds

    def _emit(self, event: dict[str, Any]) -> None:
        safe_emit(self.event_hook, event)

    async def run(
        self,
        spec: PipelineSpec,
        params: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
        cancel: asyncio.Event | None = None,
        deadline_seconds: float | None = None,
    ) -> PipelineResult:
        validate_pipeline(spec)
        merged_params = dict(spec.params)
        merged_params.update(params or {})
        deadline = None
        if deadline_seconds is not None:
            deadline = asyncio.get_running_loop().time() + deadline_seconds
        state = _RunState(
            run_id=run_id or f"run-{uuid4().hex[:12]}",
            spec=spec,
            params=merged_params,
            cancel=cancel,
            deadline=deadline,
        )
        self._emit(
            {
                "event": "pipeline_start",
                "run_id": state.run_id,
                "pipeline": spec.name,
                "steps": [step.name for step in spec.steps],
            }
        )

        try:
            for step in spec.steps:
                if isinstance(step, LoopSpec):
                    await self._run_loop(state, step)
                else:
                    await self._run_phase(state, step, state.outputs)
        except (RequiredPhaseFailure, GateAbort, GateEvaluationError) as exc:
            result = self._finalize(state, error=exc)
            self._emit(
                {
                    "event": "pipeline_failed",
                    "run_id": state.run_id,
                    "pipeline": spec.name,
                    "phase": exc.phase,
                    "error": str(exc),
                }
            )
            raise PipelineError(
                f"Pipeline '{spec.name}' aborted: {exc}",
                phase=exc.phase,
                cause=exc,
                result=result,
            ) from exc

        result = self._finalize(state)
        self._emit(
            {
                "event": "pipeline_complete",
                "run_id": state.run_id,
                "pipeline": spec.name,
                "success": result.success,
                "converged": result.converged,
                "artifacts": len(result.artifacts),
                "warnings": len(result.warnings),
            }
        )
        return result

    def _finalize(self, state: _RunState, error: Exception | None = None) -> PipelineResult:
        converged = all(bool(loop.get("converged")) for loop in state.loops.values())
        return PipelineResult(
            run_id=state.run_id,
            pipeline=state.spec.name,
            success=error is None and converged,
            outputs=copy.deepcopy(state.outputs),
            artifacts=state.ledger.to_list(),
            warnings=list(state.warnings),
            gates=list(state.gates),
            loops=dict(state.loops),
            phases=dict(state.phases),
            error=describe_error(error) if error is not None else None,
            started_at=state.started_at,
            ended_at=utcnow_iso(),
            duration_seconds=round(time.monotonic() - state.started_monotonic, 3),
        )

    async def _guard(self, state: _RunState, awaitable: Awaitable[T], *, what: str) -> T:
        """Await ``awaitable`` unless the cancel signal or run deadline fires first."""
        remaining = state.remaining()
        reason = None
        if state.cancel is not None and state.cancel.is_set():
            reason = "cancel signal received"
        elif remaining is not None and remaining <= 0:
            reason = "run deadline exceeded"
        if reason is not None:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(f"{what} cancelled before start: {reason}")

        work = asyncio.ensure_future(awaitable)
        watchers: set[asyncio.Future[Any]] = {work}
        cancel_wait: asyncio.Future[Any] | None = None
        if state.cancel is not None:
            cancel_wait = asyncio.ensure_future(state.cancel.wait())
            watchers.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(
                watchers,
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if work in done:
            return work.result()
        reason = "cancel signal received" if cancel_wait in done else "run deadline exceeded"
        raise Cancelled(f"{what} cancelled: {reason}")

    async def _execute_task(
        self,
        state: _RunState,
        phase: PhaseSpec,
        task: TaskSpec,
        payload: dict[str, Any],
        iteration: int | None,
    ) -> TaskResult:
        request = TaskRequest(
            task=task.name,
            executor=task.executor,
            payload=MappingProxyType(payload),
            schema=task.schema,
            title=task.title,
            phase=phase.name,
            run_id=state.run_id,
            iteration=iteration,
            deadline_seconds=state.remaining(),
        )
        self._emit(
            {
                "event": "task_submitted",
                "run_id": state.run_id,
                "phase": phase.name,
                "task": task.name,
                "executor": task.executor,
                "iteration": iteration,
            }
        )
        try:
            raw = await self._guard(state, self.gateway.submit(request), what=f"Task '{task.name}'")
        except PipewrightError:
            raise
        except Exception as exc:
            raise TaskExecutionError(
                f"Executor '{task.executor}' raised {type(exc).__name__}: {exc}",
                task=task.name,
                executor=task.executor,
                retriable=False,
            ) from exc

        validated = task.schema.validate(raw, task=task.name)
        artifacts = tuple(Artifact.from_dict(item) for item in validated["artifacts"])
        self._emit(
            {
                "event": "task_completed",
                "run_id": state.run_id,
                "phase": phase.name,
                "task": task.name,
                "iteration": iteration,
                "artifacts": len(artifacts),
            }
        )
        return TaskResult(task=task.name, payload=validated, artifacts=artifacts)

    def _task_failed(
        self, state: _RunState, phase: PhaseSpec, task: str, exc: Exception, iteration: int | None
    ) -> None:
        self._emit(
            {
                "event": "task_failed",
                "run_id": state.run_id,
                "phase": phase.name,
                "task": task,
                "iteration": iteration,
                "error": str(exc),
                "kind": type(exc).__name__,
            }
        )

    async def _run_tasks(
        self,
        state: _RunState,
        phase: PhaseSpec,
        payloads: list[dict[str, Any]],
        iteration: int | None,
    ) -> tuple[list[TaskResult], TaskFailure | None]:
        if phase.mode is PhaseMode.SEQUENTIAL:
            task = phase.tasks[0]
            try:
                result = await self._execute_task(state, phase, task, payloads[0], iteration)
            except TASK_ERRORS as exc:
                self._task_failed(state, phase, task.name, exc, iteration)
                return [], (task.name, exc)
            return [result], None

        futures = {
            task.name: asyncio.ensure_future(
                self._execute_task(state, phase, task, payload, iteration)
            )
            for task, payload in zip(phase.tasks, payloads)
        }
        try:
            done, _ = await asyncio.wait(futures.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            stragglers = [future for future in futures.values() if not future.done()]
            for future in stragglers:
                future.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        results: list[TaskResult] = []
        failure: TaskFailure | None = None
        for task in phase.tasks:
            future = futures[task.name]
            if future not in done:
                self._emit(
                    {
                        "event": "task_cancelled",
                        "run_id": state.run_id,
                        "phase": phase.name,
                        "task": task.name,
                        "iteration": iteration,
                    }
                )
                continue
            exc = future.exception()
            if exc is None:
                results.append(future.result())
                continue
            if not isinstance(exc, TASK_ERRORS):
                raise exc
            self._task_failed(state, phase, task.name, exc, iteration)
            if failure is None:
                failure = (task.name, exc)
        return results, failure

    async def _run_phase(
        self,
        state: _RunState,
        phase: PhaseSpec,
        scope: dict[str, Any],
        frame: LoopFrame | None = None,
    ) -> Any:
        iteration = frame.iteration if frame else None
        self._emit(
            {
                "event": "phase_start",
                "run_id": state.run_id,
                "phase": phase.name,
                "mode": phase.mode.value,
                "tasks": [task.name for task in phase.tasks],
                "iteration": iteration,
            }
        )

        results: list[TaskResult] = []
        failure: TaskFailure | None = None
        payloads: list[dict[str, Any]] = []
        for task in phase.tasks:
            try:
                payloads.append(
                    resolve_inputs(
                        task.inputs,
                        params=state.params,
                        outputs=scope,
                        frame=frame,
                        phase=phase.name,
                    )
                )
            except MissingInput as exc:
                failure = (task.name, exc)
                break
        if failure is None:
            results, failure = await self._run_tasks(state, phase, payloads, iteration)

        for result in results:
            state.ledger.extend(
                result.artifacts, phase=phase.name, task=result.task, iteration=iteration
            )

        if failure is not None:
            task_name, exc = failure
            if not phase.optional or not isinstance(exc, RECOVERABLE_ERRORS):
                state.phases[phase.name] = "failed"
                self._emit(
                    {
                        "event": "phase_failed",
                        "run_id": state.run_id,
                        "phase": phase.name,
                        "task": task_name,
                        "iteration": iteration,
                        "error": str(exc),
                    }
                )
                raise RequiredPhaseFailure(phase.name, exc, task=task_name) from exc
            logger.warning("optional phase %s degraded: %s", phase.name, exc)
            output: Any = copy.deepcopy(phase.default_output)
            state.phases[phase.name] = "degraded"
            state.warnings.append(
                {
                    "kind": "phase_degraded",
                    "phase": phase.name,
                    "task": task_name,
                    "iteration": iteration,
                    "error": describe_error(exc),
                }
            )
            self._emit(
                {
                    "event": "phase_degraded",
                    "run_id": state.run_id,
                    "phase": phase.name,
                    "task": task_name,
                    "iteration": iteration,
                    "error": str(exc),
                }
            )
        else:
            if phase.mode is PhaseMode.SEQUENTIAL:
                output = results[0].payload
            else:
                output = {result.task: result.payload for result in results}
            state.phases[phase.name] = "completed"

        scope[phase.output_key] = output
        self._emit(
            {
                "event": "phase_complete",
                "run_id": state.run_id,
                "phase": phase.name,
                "status": state.phases[phase.name],
                "iteration": iteration,
                "artifacts": sum(len(result.artifacts) for result in results),
            }
        )

        degraded = state.phases[phase.name] == "degraded"
        for gate in phase.gates:
            if degraded:
                state.warnings.append(
                    {
                        "kind": "gate_skipped",
                        "gate": gate.name,
                        "phase": phase.name,
                        "iteration": iteration,
                    }
                )
                self._emit(
                    {
                        "event": "gate_skipped",
                        "run_id": state.run_id,
                        "phase": phase.name,
                        "gate": gate.name,
                        "iteration": iteration,
                    }
                )
                continue
            await self._apply_gate(state, phase, gate, output, iteration)
        return output

    async def _apply_gate(
        self,
        state: _RunState,
        phase: PhaseSpec,
        gate: GateSpec,
        output: Any,
        iteration: int | None,
    ) -> None:
        record = evaluate_gate(output, gate, phase=phase.name, iteration=iteration)
        record.artifacts = [
            entry.to_dict() for entry in state.ledger.for_phase(phase.name, iteration=iteration)
        ]
        state.gates.append(record)
        self._emit(
            {
                "event": "gate_evaluated",
                "run_id": state.run_id,
                "phase": phase.name,
                "gate": record.gate,
                "metric": record.metric,
                "threshold": record.threshold,
                "verdict": record.verdict.value,
                "iteration": iteration,
            }
        )
        if record.verdict is Verdict.PASS:
            return

        context = gate_context(record, run_id=state.run_id, pipeline=state.spec.name)
        warning = {
            "gate": record.gate,
            "phase": phase.name,
            "iteration": iteration,
            "metric": record.metric,
            "threshold": record.threshold,
            "comparison": record.comparison,
        }
        if record.verdict is Verdict.WARN:
            record.decision = "notified"
            state.warnings.append({"kind": "gate_warning", **warning})
            try:
                await self.approvals.notify(context)
            except Exception as exc:
                logger.warning("gate notification failed for %s", record.gate, exc_info=True)
                state.warnings.append(
                    {"kind": "notification_failed", **warning, "error": str(exc)}
                )
            return

        request: Awaitable[Decision] = self.approvals.request_approval(context)
        if self.approval_timeout_seconds:
            request = asyncio.wait_for(request, timeout=self.approval_timeout_seconds)
        try:
            decision = await self._guard(state, request, what=f"Approval for gate '{record.gate}'")
        except TimeoutError as exc:
            record.decision = "cancelled"
            timeout_error = Cancelled(
                f"Approval for gate '{record.gate}' timed out after "
                f"{self.approval_timeout_seconds:.1f}s"
            )
            raise RequiredPhaseFailure(phase.name, timeout_error) from exc
        except Cancelled as exc:
            record.decision = "cancelled"
            raise RequiredPhaseFailure(phase.name, exc) from exc

        try:
            record.decision = Decision(decision).value
        except ValueError as exc:
            record.decision = "invalid"
            raise GateAbort(
                f"Gate '{record.gate}' on phase '{phase.name}' received an invalid "
                f"decision {decision!r}.",
                gate=record.gate,
                phase=phase.name,
                verdict=record.verdict.value,
            ) from exc
        if record.decision == Decision.ABORT.value:
            raise GateAbort(
                f"Gate '{record.gate}' on phase '{phase.name}' was aborted "
                f"(metric {record.metric!r} {record.comparison} {record.threshold!r}).",
                gate=record.gate,
                phase=phase.name,
                verdict=record.verdict.value,
            )
        state.warnings.append({"kind": "gate_override", **warning})

    async def _run_loop(self, state: _RunState, loop: LoopSpec) -> None:
        async def _iteration(iteration: int, feedback: Any) -> dict[str, Any]:
            frame = LoopFrame(loop=loop.name, iteration=iteration, feedback=feedback)
            scope = dict(state.outputs)
            for phase in loop.phases:
                await self._run_phase(state, phase, scope, frame)
            return {phase.output_key: scope[phase.output_key] for phase in loop.phases}

        self._emit(
            {
                "event": "loop_start",
                "run_id": state.run_id,
                "loop": loop.name,
                "max_iterations": loop.max_iterations,
                "target_score": loop.target_score,
            }
        )
        controller = ConvergenceLoop(loop, _iteration, event_hook=self._emit)
        try:
            outcome = await controller.run()
        except PipewrightError:
            history = list(controller.history)
            state.loops[loop.name] = LoopOutcome(
                converged=False,
                score=history[-1].score if history else None,
                iterations=len(history),
                stop_reason="aborted",
                history=history,
            ).summary(loop)
            raise

        state.loops[loop.name] = outcome.summary(loop)
        for key, value in outcome.final_output.items():
            state.outputs[key] = value
        state.outputs[loop.output_key] = outcome.to_output()
        if not outcome.converged:
            state.warnings.append(
                {
                    "kind": "loop_not_converged",
                    "loop": loop.name,
                    "score": outcome.score,
                    "target_score": loop.target_score,
                    "iterations": outcome.iterations,
                    "stop_reason": outcome.stop_reason,
                }
            )
        self._emit(
            {
                "event": "loop_complete",
                "run_id": state.run_id,
                "loop": loop.name,
                "converged": outcome.converged,
                "score": outcome.score,
                "iterations": outcome.iterations,
                "stop_reason": outcome.stop_reason,
            }
        )
