from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

from pipewright.bindings import iter_references, parse_reference
from pipewright.errors import DefinitionError
from pipewright.gates import COMPARISONS, METRIC_KINDS, normalize_comparison
from pipewright.models import (
    CriticalSelector,
    GateSpec,
    LoopSpec,
    MetricSpec,
    OutputSchema,
    PhaseMode,
    PhaseSpec,
    PipelineSpec,
    Step,
    TaskSpec,
)
from pipewright.paths import split_path

BUILTIN_PACKAGE = "pipewright.pipelines"
_MODE_ALIASES = {
    "sequential": PhaseMode.SEQUENTIAL,
    "sequential-single": PhaseMode.SEQUENTIAL,
    "parallel": PhaseMode.PARALLEL,
    "parallel-fan-out": PhaseMode.PARALLEL,
}


def _require_table(raw: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"{where} must be a table, got {type(raw).__name__}.")
    return raw


def _require_name(raw: Mapping[str, Any], where: str) -> str:
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError(f"{where} requires a non-empty 'name'.")
    return name.strip()


def _parse_task(raw: Any, phase: str) -> TaskSpec:
    table = _require_table(raw, f"Task in phase '{phase}'")
    name = _require_name(table, f"Task in phase '{phase}'")
    executor = table.get("executor")
    if not isinstance(executor, str) or not executor.strip():
        raise DefinitionError(f"Task '{name}' in phase '{phase}' requires an 'executor' id.")
    inputs = table.get("inputs", {}) or {}
    _require_table(inputs, f"Task '{name}' inputs")
    return TaskSpec(
        name=name,
        executor=executor.strip(),
        title=str(table.get("title", "")),
        inputs=dict(inputs),
        schema=OutputSchema.from_dict(table.get("schema")),
        labels=tuple(str(label) for label in table.get("labels", []) or []),
    )


def _parse_metric(raw: Any, gate: str) -> MetricSpec:
    if isinstance(raw, str):
        return MetricSpec(kind="value", path=raw)
    table = _require_table(raw, f"Gate '{gate}' metric")
    kind = table.get("kind", "value")
    if kind not in METRIC_KINDS:
        raise DefinitionError(
            f"Gate '{gate}' metric kind {kind!r} is not one of {sorted(METRIC_KINDS)}."
        )
    path = table.get("path")
    if not isinstance(path, str) or not split_path(path):
        raise DefinitionError(f"Gate '{gate}' metric requires a 'path'.")
    where = table.get("where", {}) or {}
    _require_table(where, f"Gate '{gate}' metric filter")
    return MetricSpec(kind=kind, path=path, where=dict(where))


def _parse_gate(raw: Any, phase: str, default_name: str) -> GateSpec:
    table = _require_table(raw, f"Gate on phase '{phase}'")
    name = str(table.get("name") or default_name)
    if "metric" not in table:
        raise DefinitionError(f"Gate '{name}' requires a 'metric'.")
    on_fail = table.get("on_fail", "block")
    if on_fail not in {"warn", "block"}:
        raise DefinitionError(f"Gate '{name}' on_fail must be 'warn' or 'block'.")
    comparison, _ = normalize_comparison(str(table.get("comparison", ">=")), None)
    if comparison not in COMPARISONS:
        raise DefinitionError(
            f"Gate '{name}' comparison {table.get('comparison')!r} is not supported."
        )
    return GateSpec(
        name=name,
        metric=_parse_metric(table["metric"], name),
        comparison=str(table.get("comparison", ">=")),
        threshold=table.get("threshold", 0),
        on_fail=on_fail,
        block_threshold=table.get("block_threshold"),
    )


def _parse_gates(table: Mapping[str, Any], phase: str) -> tuple[GateSpec, ...]:
    if "gate" in table and "gates" in table:
        raise DefinitionError(f"Phase '{phase}' declares both 'gate' and 'gates'.")
    if "gate" in table:
        return (_parse_gate(table["gate"], phase, f"{phase}-gate"),)
    raw = table.get("gates", []) or []
    if not isinstance(raw, list):
        raise DefinitionError(f"Phase '{phase}' 'gates' must be an array of tables.")
    return tuple(
        _parse_gate(item, phase, f"{phase}-gate-{index}") for index, item in enumerate(raw, start=1)
    )


def _parse_phase(raw: Any) -> PhaseSpec:
    table = _require_table(raw, "Phase")
    name = _require_name(table, "Phase")
    tasks = table.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        raise DefinitionError(f"Phase '{name}' must declare at least one task.")
    parsed_tasks = tuple(_parse_task(task, name) for task in tasks)

    raw_mode = table.get("mode")
    optional = bool(table.get("optional", False))
    if raw_mode is None:
        mode = PhaseMode.PARALLEL if len(parsed_tasks) > 1 else PhaseMode.SEQUENTIAL
    elif raw_mode == "optional":
        mode = PhaseMode.SEQUENTIAL
        optional = True
    elif raw_mode in _MODE_ALIASES:
        mode = _MODE_ALIASES[raw_mode]
    else:
        raise DefinitionError(f"Phase '{name}' has unknown mode {raw_mode!r}.")

    default_output = table.get("default_output", {}) or {}
    _require_table(default_output, f"Phase '{name}' default_output")
    return PhaseSpec(
        name=name,
        tasks=parsed_tasks,
        mode=mode,
        optional=optional,
        default_output=dict(default_output),
        gates=_parse_gates(table, name),
        depends_on=tuple(str(item) for item in table.get("depends_on", []) or []),
        title=str(table.get("title", "")),
    )


def _parse_loop(raw: Mapping[str, Any]) -> LoopSpec:
    name = _require_name(raw, "Loop")
    phases = raw.get("phases")
    if not isinstance(phases, list) or not phases:
        raise DefinitionError(f"Loop '{name}' must wrap at least one phase.")
    for item in phases:
        if isinstance(item, Mapping) and item.get("kind") == "loop":
            raise DefinitionError(f"Loop '{name}' cannot contain a nested loop.")
    score = raw.get("score")
    if not isinstance(score, str) or not split_path(score):
        raise DefinitionError(f"Loop '{name}' requires a 'score' path.")

    critical_raw = raw.get("critical")
    critical: CriticalSelector | None = None
    if isinstance(critical_raw, str):
        critical = CriticalSelector(path=critical_raw)
    elif critical_raw is not None:
        table = _require_table(critical_raw, f"Loop '{name}' critical")
        path = table.get("path")
        if not isinstance(path, str) or not split_path(path):
            raise DefinitionError(f"Loop '{name}' critical selector requires a 'path'.")
        critical = CriticalSelector(path=path, where=dict(table.get("where", {}) or {}))

    try:
        max_iterations = int(raw.get("max_iterations", 3))
        target_score = float(raw.get("target_score", 85))
    except (TypeError, ValueError) as exc:
        raise DefinitionError(f"Loop '{name}' has a non-numeric bound: {exc}") from exc

    feedback = raw.get("feedback")
    return LoopSpec(
        name=name,
        phases=tuple(_parse_phase(item) for item in phases),
        score_path=score,
        max_iterations=max_iterations,
        target_score=target_score,
        critical=critical,
        feedback_path=str(feedback) if feedback else None,
        title=str(raw.get("title", "")),
    )


def _parse_step(raw: Any) -> Step:
    table = _require_table(raw, "Pipeline step")
    if table.get("kind") == "loop":
        return _parse_loop(table)
    return _parse_phase(table)


def parse_definition(data: Mapping[str, Any]) -> PipelineSpec:
    """Build and validate a ``PipelineSpec`` from a decoded definition document."""
    table = _require_table(data, "Pipeline definition")
    name = _require_name(table, "Pipeline definition")
    steps = table.get("phases")
    if not isinstance(steps, list) or not steps:
        raise DefinitionError(f"Pipeline '{name}' must declare at least one phase.")
    params = table.get("params", {}) or {}
    _require_table(params, f"Pipeline '{name}' params")
    spec = PipelineSpec(
        name=name,
        steps=tuple(_parse_step(step) for step in steps),
        title=str(table.get("title", "")),
        description=str(table.get("description", "")),
        params=dict(params),
    )
    validate_pipeline(spec)
    return spec


def _check_output_path(
    phase: PhaseSpec,
    segments: list[str],
    *,
    what: str,
) -> None:
    if not segments:
        return
    if phase.mode is PhaseMode.PARALLEL:
        task_names = {task.name for task in phase.tasks}
        if segments[0] not in task_names:
            raise DefinitionError(
                f"{what} references '{segments[0]}', which is not a task of fan-out "
                f"phase '{phase.name}' (tasks: {sorted(task_names)})."
            )
        task = next(task for task in phase.tasks if task.name == segments[0])
        segments = segments[1:]
        if not segments:
            return
    else:
        task = phase.tasks[0]
    fields = task.schema.field_names | set(phase.default_output.keys())
    if segments[0] not in fields:
        raise DefinitionError(
            f"{what} references field '{segments[0]}', which task '{task.name}' does not "
            f"declare in its output schema."
        )


def _validate_phase(
    phase: PhaseSpec,
    available: Mapping[str, PhaseSpec | LoopSpec],
    *,
    in_loop: bool,
) -> None:
    if phase.mode is PhaseMode.SEQUENTIAL and len(phase.tasks) != 1:
        raise DefinitionError(
            f"Sequential phase '{phase.name}' must have exactly one task "
            f"(found {len(phase.tasks)})."
        )
    task_names = [task.name for task in phase.tasks]
    duplicates = sorted({item for item in task_names if task_names.count(item) > 1})
    if duplicates:
        raise DefinitionError(f"Phase '{phase.name}' declares duplicate tasks: {duplicates}.")

    for dependency in phase.depends_on:
        if dependency not in available:
            raise DefinitionError(
                f"Phase '{phase.name}' depends on '{dependency}', which is not an earlier phase."
            )

    for task in phase.tasks:
        for text in iter_references(task.inputs):
            try:
                reference = parse_reference(text)
            except ValueError as exc:
                raise DefinitionError(f"Task '{task.name}': {exc}") from exc
            if reference.root == "loop" and not in_loop:
                raise DefinitionError(
                    f"Task '{task.name}' references '{text}' outside a convergence loop."
                )
            if reference.root == "phases" and reference.segments[0] not in available:
                raise DefinitionError(
                    f"Task '{task.name}' references '{text}', but '{reference.segments[0]}' "
                    "is not an earlier phase."
                )

    gate_names = [gate.name for gate in phase.gates]
    if len(gate_names) != len(set(gate_names)):
        raise DefinitionError(f"Phase '{phase.name}' declares duplicate gates: {gate_names}.")
    for gate in phase.gates:
        _check_output_path(
            phase,
            split_path(gate.metric.path),
            what=f"Gate '{gate.name}' on phase '{phase.name}'",
        )


def _validate_loop_path(loop: LoopSpec, path: str, what: str) -> None:
    segments = split_path(path)
    owners = {phase.name: phase for phase in loop.phases}
    if segments[0] not in owners:
        raise DefinitionError(
            f"Loop '{loop.name}' {what} path '{path}' must start with one of its phases "
            f"{sorted(owners)}."
        )
    _check_output_path(owners[segments[0]], segments[1:], what=f"Loop '{loop.name}' {what}")


def validate_pipeline(spec: PipelineSpec) -> None:
    """Reject malformed pipelines before any task is submitted."""
    if not spec.steps:
        raise DefinitionError(f"Pipeline '{spec.name}' has no phases.")

    available: dict[str, PhaseSpec | LoopSpec] = {}

    def _claim(key: str, owner: PhaseSpec | LoopSpec) -> None:
        if key in available:
            raise DefinitionError(
                f"Pipeline '{spec.name}' defines output key '{key}' more than once."
            )
        available[key] = owner

    for step in spec.steps:
        if isinstance(step, LoopSpec):
            if step.max_iterations < 1:
                raise DefinitionError(f"Loop '{step.name}' max_iterations must be at least 1.")
            if not step.phases:
                raise DefinitionError(f"Loop '{step.name}' wraps no phases.")
            if step.name in available:
                raise DefinitionError(
                    f"Pipeline '{spec.name}' defines output key '{step.name}' more than once."
                )
            for phase in step.phases:
                _validate_phase(phase, available, in_loop=True)
                _claim(phase.output_key, phase)
            _validate_loop_path(step, step.score_path, "score")
            if step.critical is not None:
                _validate_loop_path(step, step.critical.path, "critical")
            if step.feedback_path:
                _validate_loop_path(step, step.feedback_path, "feedback")
            _claim(step.output_key, step)
            continue

        _validate_phase(step, available, in_loop=False)
        _claim(step.output_key, step)


def load_definition(source: str | Path) -> PipelineSpec:
    """Load a definition from a ``.toml``/``.json`` path or a built-in name."""
    path = Path(source)
    if path.is_file():
        text = path.read_text(encoding="utf-8")
        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = tomllib.loads(text)
        except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
            raise DefinitionError(f"Cannot parse pipeline definition {path}: {exc}") from exc
        return parse_definition(data)
    if str(source) in list_builtin_definitions():
        return builtin_definition(str(source))
    raise DefinitionError(f"Pipeline definition not found: {source}")


def list_builtin_definitions() -> list[str]:
    root = resources.files(BUILTIN_PACKAGE)
    return sorted(
        item.name.removesuffix(".toml")
        for item in root.iterdir()
        if item.name.endswith(".toml")
    )


def builtin_definition(name: str) -> PipelineSpec:
    resource = resources.files(BUILTIN_PACKAGE).joinpath(f"{name}.toml")
    try:
        text = resource.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise DefinitionError(f"Unknown built-in pipeline: {name}") from exc
    return parse_definition(tomllib.loads(text))
