from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from typing import Any

from pipewright.errors import GateEvaluationError
from pipewright.models import GateRecord, GateSpec, MetricSpec, Verdict
from pipewright.paths import resolve_path, select_items

COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}
METRIC_KINDS = {"value", "count", "present"}


def normalize_comparison(comparison: str, threshold: Any) -> tuple[str, Any]:
    text = comparison.replace(" ", "")
    if text == "==0":
        return "==", 0
    return text, threshold


def compute_metric(output: Mapping[str, Any], metric: MetricSpec, *, gate: str, phase: str) -> Any:
    if metric.kind == "present":
        try:
            value = resolve_path(output, metric.path)
        except KeyError:
            return False
        return bool(value)

    try:
        value = resolve_path(output, metric.path)
    except KeyError as exc:
        raise GateEvaluationError(
            f"Gate '{gate}' metric field '{exc.args[0]}' is missing from phase '{phase}' output.",
            gate=gate,
            phase=phase,
        ) from exc

    if metric.kind == "count":
        try:
            return len(select_items(value, metric.where))
        except TypeError as exc:
            raise GateEvaluationError(
                f"Gate '{gate}' cannot count '{metric.path}': {exc}.",
                gate=gate,
                phase=phase,
            ) from exc

    if isinstance(value, bool) or (isinstance(value, (int, float))):
        return value
    raise GateEvaluationError(
        f"Gate '{gate}' metric '{metric.path}' must be numeric or boolean, "
        f"got {type(value).__name__}.",
        gate=gate,
        phase=phase,
    )


def _compare(metric: Any, comparison: str, threshold: Any, *, gate: str, phase: str) -> bool:
    try:
        return bool(COMPARISONS[comparison](metric, threshold))
    except TypeError as exc:
        raise GateEvaluationError(
            f"Gate '{gate}' cannot compare {metric!r} {comparison} {threshold!r}.",
            gate=gate,
            phase=phase,
        ) from exc


def evaluate_gate(
    output: Mapping[str, Any],
    gate: GateSpec,
    *,
    phase: str,
    iteration: int | None = None,
) -> GateRecord:
    """Compute the gate metric from ``output`` and map it onto a verdict.

    A passing comparison yields ``pass``. A failing one yields the gate's
    ``on_fail`` verdict; a ``warn`` gate escalates to ``blocking`` when its
    ``block_threshold`` is also failed. Malformed output raises
    ``GateEvaluationError`` instead of producing a verdict.
    """
    comparison, threshold = normalize_comparison(gate.comparison, gate.threshold)
    if comparison not in COMPARISONS:
        raise GateEvaluationError(
            f"Gate '{gate.name}' uses unsupported comparison '{gate.comparison}'.",
            gate=gate.name,
            phase=phase,
        )
    metric = compute_metric(output, gate.metric, gate=gate.name, phase=phase)

    if _compare(metric, comparison, threshold, gate=gate.name, phase=phase):
        verdict = Verdict.PASS
    elif gate.on_fail == "block":
        verdict = Verdict.BLOCK
    elif gate.block_threshold is not None and not _compare(
        metric, comparison, gate.block_threshold, gate=gate.name, phase=phase
    ):
        verdict = Verdict.BLOCK
    else:
        verdict = Verdict.WARN

    return GateRecord(
        gate=gate.name,
        phase=phase,
        metric=metric,
        threshold=threshold,
        comparison=comparison,
        verdict=verdict,
        iteration=iteration,
    )


def gate_context(record: GateRecord, *, run_id: str, pipeline: str) -> dict[str, Any]:
    return {
        "run_id": run_id,
        "pipeline": pipeline,
        "title": f"{record.phase} quality gate: {record.gate}",
        "question": (
            f"Gate '{record.gate}' after phase '{record.phase}': metric {record.metric!r} "
            f"{record.comparison} {record.threshold!r} failed. Proceed?"
        ),
        **record.to_dict(),
    }
