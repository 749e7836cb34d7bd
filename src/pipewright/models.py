from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from jsonschema import Draft202012Validator, SchemaError, ValidationError
from jsonschema.exceptions import best_match

from pipewright.errors import DefinitionError, SchemaViolation

ARTIFACTS_FIELD = "artifacts"
ARTIFACTS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["path", "format"],
        "properties": {
            "path": {"type": "string"},
            "format": {"type": "string"},
            "label": {"type": "string"},
        },
    },
}
_EXAMPLE_DEFAULTS: dict[str, Any] = {
    "string": "",
    "number": 0,
    "integer": 0,
    "boolean": True,
    "array": [],
    "object": {},
    "null": None,
}


class PhaseMode(str, Enum):
    SEQUENTIAL = "sequential-single"
    PARALLEL = "parallel-fan-out"


class Verdict(str, Enum):
    PASS = "pass"
    WARN = "pass-with-warning"
    BLOCK = "blocking"


class Decision(str, Enum):
    PROCEED = "proceed"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class Artifact:
    path: str
    format: str
    label: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Artifact:
        label = payload.get("label")
        return cls(
            path=str(payload["path"]),
            format=str(payload["format"]),
            label=None if label is None else str(label),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path, "format": self.format}
        if self.label is not None:
            data["label"] = self.label
        return data


def _example_value(schema: Mapping[str, Any]) -> Any:
    if schema.get("enum"):
        return schema["enum"][0]
    kind = schema.get("type")
    if isinstance(kind, list):
        kind = kind[0] if kind else None
    if kind in {"number", "integer"} and schema.get("minimum") is not None:
        minimum = schema["minimum"]
        return int(minimum) if kind == "integer" else minimum
    return copy.deepcopy(_EXAMPLE_DEFAULTS.get(kind))


def _violation_field(error: ValidationError) -> str | None:
    if error.path:
        return str(error.path[0])
    if error.validator == "required" and isinstance(error.instance, Mapping):
        missing = [name for name in error.validator_value if name not in error.instance]
        return missing[0] if missing else None
    return None


@dataclass(frozen=True, slots=True)
class OutputSchema:
    """Declared output contract of a task, held as a JSON Schema object.

    The ``artifacts`` array is always part of the contract, whether or not the
    definition lists it.
    """

    schema: dict[str, Any] = field(default_factory=dict)
    _validator: Draft202012Validator = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        raw = dict(self.schema)
        try:
            Draft202012Validator.check_schema(raw)
        except SchemaError as exc:
            raise DefinitionError(f"Invalid output schema: {exc.message}") from exc
        if raw.get("type", "object") != "object":
            raise DefinitionError("Output schema must describe an object.")

        normalized = copy.deepcopy(raw)
        normalized["type"] = "object"
        properties = dict(normalized.get("properties", {}))
        properties[ARTIFACTS_FIELD] = copy.deepcopy(ARTIFACTS_SCHEMA)
        normalized["properties"] = properties
        required = list(normalized.get("required", []))
        if ARTIFACTS_FIELD not in required:
            required.append(ARTIFACTS_FIELD)
        normalized["required"] = required

        object.__setattr__(self, "schema", normalized)
        object.__setattr__(self, "_validator", Draft202012Validator(normalized))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> OutputSchema:
        if data is not None and not isinstance(data, Mapping):
            raise DefinitionError("Output schema must be a table.")
        return cls(schema=dict(data or {}))

    @property
    def field_names(self) -> set[str]:
        return set(self.schema["properties"]) | set(self.schema["required"])

    def validate(self, payload: Any, *, task: str) -> dict[str, Any]:
        error = best_match(self._validator.iter_errors(payload))
        if error is not None:
            field_name = _violation_field(error)
            location = f" field '{field_name}'" if field_name else ""
            raise SchemaViolation(
                f"Task '{task}' result{location} violates its output schema: {error.message}",
                task=task,
                field=field_name,
            )
        return dict(payload)

    def example(self) -> dict[str, Any]:
        properties = self.schema["properties"]
        return {name: _example_value(properties.get(name, {})) for name in self.schema["required"]}

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.schema)


@dataclass(frozen=True, slots=True)
class TaskSpec:
    name: str
    executor: str
    title: str = ""
    inputs: dict[str, Any] = field(default_factory=dict)
    schema: OutputSchema = field(default_factory=OutputSchema)
    labels: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MetricSpec:
    kind: Literal["value", "count", "present"]
    path: str
    where: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GateSpec:
    name: str
    metric: MetricSpec
    comparison: str = ">="
    threshold: Any = 0
    on_fail: Literal["warn", "block"] = "block"
    block_threshold: Any = None


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    name: str
    tasks: tuple[TaskSpec, ...]
    mode: PhaseMode = PhaseMode.SEQUENTIAL
    optional: bool = False
    default_output: dict[str, Any] = field(default_factory=dict)
    gates: tuple[GateSpec, ...] = ()
    depends_on: tuple[str, ...] = ()
    title: str = ""

    @property
    def output_key(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class CriticalSelector:
    path: str
    where: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LoopSpec:
    name: str
    phases: tuple[PhaseSpec, ...]
    score_path: str
    max_iterations: int = 3
    target_score: float = 85
    critical: CriticalSelector | None = None
    feedback_path: str | None = None
    title: str = ""

    @property
    def output_key(self) -> str:
        return self.name


Step = PhaseSpec | LoopSpec


@dataclass(frozen=True, slots=True)
class PipelineSpec:
    name: str
    steps: tuple[Step, ...]
    title: str = ""
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def iter_phases(self) -> list[PhaseSpec]:
        phases: list[PhaseSpec] = []
        for step in self.steps:
            if isinstance(step, LoopSpec):
                phases.extend(step.phases)
            else:
                phases.append(step)
        return phases


@dataclass(frozen=True, slots=True)
class TaskResult:
    task: str
    payload: dict[str, Any]
    artifacts: tuple[Artifact, ...] = ()


@dataclass(slots=True)
class GateRecord:
    gate: str
    phase: str
    metric: Any
    threshold: Any
    comparison: str
    verdict: Verdict
    iteration: int | None = None
    decision: str | None = None
    artifacts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate": self.gate,
            "phase": self.phase,
            "metric": self.metric,
            "threshold": self.threshold,
            "comparison": self.comparison,
            "verdict": self.verdict.value,
            "iteration": self.iteration,
            "decision": self.decision,
            "artifacts": list(self.artifacts),
        }


@dataclass(slots=True)
class IterationRecord:
    iteration: int
    score: float
    critical_findings: list[Any]
    validation_output: dict[str, Any]
    feedback: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "score": self.score,
            "critical_findings": list(self.critical_findings),
            "validation_output": self.validation_output,
            "feedback": self.feedback,
        }


TIMING_FIELDS = ("started_at", "ended_at", "duration_seconds")


@dataclass(slots=True)
class PipelineResult:
    run_id: str
    pipeline: str
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    gates: list[GateRecord] = field(default_factory=list)
    loops: dict[str, dict[str, Any]] = field(default_factory=dict)
    phases: dict[str, str] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    started_at: str = ""
    ended_at: str = ""
    duration_seconds: float = 0.0

    @property
    def converged(self) -> bool | None:
        if not self.loops:
            return None
        return all(bool(loop.get("converged")) for loop in self.loops.values())

    def to_dict(self, *, include_timing: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "success": self.success,
            "converged": self.converged,
            "outputs": self.outputs,
            "artifacts": list(self.artifacts),
            "warnings": list(self.warnings),
            "gates": [gate.to_dict() for gate in self.gates],
            "loops": self.loops,
            "phases": dict(self.phases),
            "error": self.error,
        }
        if include_timing:
            data["started_at"] = self.started_at
            data["ended_at"] = self.ended_at
            data["duration_seconds"] = self.duration_seconds
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PipelineResult:
        gates = [
            GateRecord(
                gate=item["gate"],
                phase=item["phase"],
                metric=item.get("metric"),
                threshold=item.get("threshold"),
                comparison=item.get("comparison", ""),
                verdict=Verdict(item["verdict"]),
                iteration=item.get("iteration"),
                decision=item.get("decision"),
                artifacts=list(item.get("artifacts", [])),
            )
            for item in data.get("gates", [])
        ]
        return cls(
            run_id=str(data["run_id"]),
            pipeline=str(data["pipeline"]),
            success=bool(data["success"]),
            outputs=dict(data.get("outputs", {})),
            artifacts=list(data.get("artifacts", [])),
            warnings=list(data.get("warnings", [])),
            gates=gates,
            loops=dict(data.get("loops", {})),
            phases=dict(data.get("phases", {})),
            error=data.get("error"),
            started_at=str(data.get("started_at", "")),
            ended_at=str(data.get("ended_at", "")),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
        )
