from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pipewright.errors import GateEvaluationError
from pipewright.models import IterationRecord, LoopSpec
from pipewright.observe import EventHook, safe_emit
from pipewright.paths import resolve_path, select_items, split_path

IterationRunner = Callable[[int, Any], Awaitable[dict[str, Any]]]


@dataclass(slots=True)
class LoopOutcome:
    converged: bool
    score: float | None
    iterations: int
    stop_reason: str
    history: list[IterationRecord] = field(default_factory=list)
    final_output: dict[str, Any] = field(default_factory=dict)

    def summary(self, spec: LoopSpec) -> dict[str, Any]:
        return {
            "converged": self.converged,
            "score": self.score,
            "iterations": self.iterations,
            "stop_reason": self.stop_reason,
            "target_score": spec.target_score,
            "max_iterations": spec.max_iterations,
            "history": [record.to_dict() for record in self.history],
        }

    def to_output(self) -> dict[str, Any]:
        return {
            "converged": self.converged,
            "score": self.score,
            "iterations": self.iterations,
            "stop_reason": self.stop_reason,
        }


class ConvergenceLoop:
    """Repeats a generate/validate/score sub-pipeline until it converges.

    The termination rule is evaluated after every iteration, in order:

    1. critical findings force another iteration; at the iteration cap the
       loop stops anyway and reports ``converged=False``;
    2. a score at or above the target converges;
    3. reaching the cap stops with ``converged=False``;
    4. otherwise the iteration's feedback seeds the next one.
    """

    def __init__(
        self,
        spec: LoopSpec,
        run_iteration: IterationRunner,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.spec = spec
        self.run_iteration = run_iteration
        self.event_hook = event_hook
        self.history: list[IterationRecord] = []

    def _emit(self, event: dict[str, Any]) -> None:
        safe_emit(self.event_hook, event)

    def _owner(self, path: str) -> str:
        segments = split_path(path)
        return segments[0] if segments else self.spec.name

    def extract_score(self, outputs: Mapping[str, Any]) -> float:
        try:
            score = resolve_path(outputs, self.spec.score_path)
        except KeyError as exc:
            raise GateEvaluationError(
                f"Loop '{self.spec.name}' score field '{exc.args[0]}' is missing.",
                gate=self.spec.name,
                phase=self._owner(self.spec.score_path),
            ) from exc
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise GateEvaluationError(
                f"Loop '{self.spec.name}' score must be numeric, got {type(score).__name__}.",
                gate=self.spec.name,
                phase=self._owner(self.spec.score_path),
            )
        return score

    def extract_critical(self, outputs: Mapping[str, Any]) -> list[Any]:
        selector = self.spec.critical
        if selector is None:
            return []
        try:
            return select_items(resolve_path(outputs, selector.path), selector.where)
        except KeyError as exc:
            raise GateEvaluationError(
                f"Loop '{self.spec.name}' critical findings field '{exc.args[0]}' is missing.",
                gate=self.spec.name,
                phase=self._owner(selector.path),
            ) from exc
        except TypeError as exc:
            raise GateEvaluationError(
                f"Loop '{self.spec.name}' critical findings at '{selector.path}': {exc}.",
                gate=self.spec.name,
                phase=self._owner(selector.path),
            ) from exc

    def extract_feedback(self, outputs: Mapping[str, Any]) -> Any:
        if not self.spec.feedback_path:
            return None
        try:
            return resolve_path(outputs, self.spec.feedback_path)
        except KeyError:
            return None

    def _outcome(self, converged: bool, stop_reason: str, outputs: dict[str, Any]) -> LoopOutcome:
        last = self.history[-1] if self.history else None
        return LoopOutcome(
            converged=converged,
            score=last.score if last else None,
            iterations=len(self.history),
            stop_reason=stop_reason,
            history=list(self.history),
            final_output=outputs,
        )

    async def run(self) -> LoopOutcome:
        spec = self.spec
        feedback: Any = None
        iteration = 0
        while True:
            iteration += 1
            outputs = await self.run_iteration(iteration, feedback)
            score = self.extract_score(outputs)
            critical = self.extract_critical(outputs)
            next_feedback = self.extract_feedback(outputs)
            self.history.append(
                IterationRecord(
                    iteration=iteration,
                    score=score,
                    critical_findings=critical,
                    validation_output=outputs,
                    feedback=next_feedback,
                )
            )
            self._emit(
                {
                    "event": "loop_iteration",
                    "loop": spec.name,
                    "iteration": iteration,
                    "score": score,
                    "target_score": spec.target_score,
                    "critical_findings": len(critical),
                }
            )

            at_cap = iteration >= spec.max_iterations
            if critical:
                if at_cap:
                    return self._outcome(False, "critical-findings", outputs)
            elif score >= spec.target_score:
                return self._outcome(True, "target-met", outputs)
            elif at_cap:
                return self._outcome(False, "max-iterations", outputs)
            feedback = next_feedback
