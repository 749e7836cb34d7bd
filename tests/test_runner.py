import asyncio
import time
from typing import Any

import pytest

from pipewright.approval import AutoApprovalChannel
from pipewright.definition import parse_definition
from pipewright.errors import (
    Cancelled,
    GateAbort,
    GateEvaluationError,
    MissingInput,
    PipelineError,
    RequiredPhaseFailure,
    SchemaViolation,
    TaskExecutionError,
)
from pipewright.executors import ScriptedExecutor
from pipewright.models import Decision, PipelineSpec, Verdict
from pipewright.runner import PipelineRunner


def _art(path: str, fmt: str = "json") -> dict[str, str]:
    return {"path": path, "format": fmt}


def _task(name: str, **extra: Any) -> dict[str, Any]:
    return {"name": name, "executor": "agent", **extra}


def _spec(phases: list[dict[str, Any]], **extra: Any) -> PipelineSpec:
    return parse_definition({"name": "test-pipeline", "phases": phases, **extra})


def _runner(
    executor: ScriptedExecutor,
    approvals: AutoApprovalChannel | None = None,
    **kwargs: Any,
) -> PipelineRunner:
    return PipelineRunner(executor, approvals or AutoApprovalChannel(), **kwargs)


def _paths(artifacts: list[dict[str, Any]]) -> list[str]:
    return [item["path"] for item in artifacts]


def _loop_spec(max_iterations: int = 5, **loop_extra: Any) -> PipelineSpec:
    return _spec(
        [
            {
                "kind": "loop",
                "name": "refine",
                "max_iterations": max_iterations,
                "target_score": 85,
                "score": "assess.score",
                "feedback": "assess.recommendations",
                **loop_extra,
                "phases": [
                    {
                        "name": "implement",
                        "tasks": [
                            _task(
                                "implement",
                                inputs={
                                    "iteration": "$loop.iteration",
                                    "feedback": "$loop.feedback?",
                                },
                                schema={
                                    "required": ["files"],
                                    "properties": {"files": {"type": "array"}},
                                },
                            )
                        ],
                    },
                    {
                        "name": "scan",
                        "tasks": [
                            _task(
                                "scan",
                                inputs={"files": "$phases.implement.files"},
                                schema={"properties": {"findings": {"type": "array"}}},
                            )
                        ],
                    },
                    {
                        "name": "assess",
                        "tasks": [
                            _task(
                                "assess",
                                schema={
                                    "required": ["score"],
                                    "properties": {
                                        "score": {"type": "number"},
                                        "recommendations": {"type": "array"},
                                    },
                                },
                            )
                        ],
                    },
                ],
            },
            {
                "name": "report",
                "tasks": [_task("report", inputs={"files": "$phases.implement.files"})],
            },
        ]
    )


def _implement(request: Any) -> dict[str, Any]:
    return {
        "files": [f"main-{request.iteration}.tf"],
        "artifacts": [_art(f"impl-{request.iteration}.tf", "hcl")],
    }


def _scores(*scores: float) -> list[dict[str, Any]]:
    return [
        {"score": score, "recommendations": [f"raise {score}"], "artifacts": []}
        for score in scores
    ]


def test_sequential_phases_accumulate_artifacts_in_completion_order() -> None:
    spec = _spec(
        [
            {
                "name": "plan",
                "tasks": [
                    _task(
                        "plan",
                        schema={"required": ["value"], "properties": {"value": {"type": "string"}}},
                    )
                ],
            },
            {"name": "build", "tasks": [_task("build", inputs={"source": "$phases.plan.value"})]},
        ]
    )
    executor = ScriptedExecutor(
        {
            "plan": {"value": "x", "artifacts": [_art("plan-1.json"), _art("plan-2.md", "md")]},
            "build": {"artifacts": [_art("build.json")]},
        }
    )

    result = asyncio.run(_runner(executor).run(spec))

    assert result.success is True
    assert result.converged is None
    assert _paths(result.artifacts) == ["plan-1.json", "plan-2.md", "build.json"]
    assert [item["phase"] for item in result.artifacts] == ["plan", "plan", "build"]
    assert result.outputs["plan"]["value"] == "x"
    assert dict(executor.calls_for("build")[0].payload) == {"source": "x"}
    assert result.phases == {"plan": "completed", "build": "completed"}


def test_task_payload_is_read_only() -> None:
    spec = _spec([{"name": "only", "tasks": [_task("only", inputs={"key": "value"})]}])
    executor = ScriptedExecutor()

    asyncio.run(_runner(executor).run(spec))

    with pytest.raises(TypeError):
        executor.calls[0].payload["key"] = "changed"  # type: ignore[index]


def test_params_defaults_are_overridden_by_run_params() -> None:
    spec = _spec(
        [{"name": "deploy", "tasks": [_task("deploy", inputs={"env": "$params.env"})]}],
        params={"env": "dev", "region": "eu"},
    )
    executor = ScriptedExecutor()

    asyncio.run(_runner(executor).run(spec, {"env": "prod"}))

    assert dict(executor.calls[0].payload) == {"env": "prod"}


def test_fan_out_outputs_are_keyed_by_task_in_declaration_order() -> None:
    spec = _spec(
        [
            {
                "name": "design",
                "tasks": [_task("compute"), _task("network")],
            }
        ]
    )
    executor = ScriptedExecutor(
        {
            "compute": {"artifacts": [_art("compute.json")]},
            "network": {"artifacts": [_art("network.json")]},
        },
        delays={"compute": 0.05},
    )

    result = asyncio.run(_runner(executor).run(spec))

    assert set(result.outputs["design"]) == {"compute", "network"}
    assert _paths(result.artifacts) == ["compute.json", "network.json"]


def test_fan_out_failure_names_failing_task_and_stops_siblings() -> None:
    spec = _spec(
        [
            {"name": "prepare", "tasks": [_task("prepare")]},
            {"name": "validate", "tasks": [_task("lint"), _task("slow-scan")]},
            {"name": "publish", "tasks": [_task("publish")]},
        ]
    )
    executor = ScriptedExecutor(
        {
            "prepare": {"artifacts": [_art("prepare.json")]},
            "lint": TaskExecutionError("lint crashed", task="lint", executor="agent"),
            "slow-scan": {"artifacts": [_art("scan.json")]},
        },
        delays={"slow-scan": 5.0},
    )

    started = time.monotonic()
    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec))

    assert time.monotonic() - started < 2.0
    failure = info.value.cause
    assert isinstance(failure, RequiredPhaseFailure)
    assert failure.task == "lint"
    assert failure.phase == "validate"
    assert "lint" in str(info.value)
    result = info.value.result
    assert result.success is False
    assert _paths(result.artifacts) == ["prepare.json"]
    assert result.phases["validate"] == "failed"
    assert result.error is not None and result.error["cause"]["task"] == "lint"
    assert executor.calls_for("publish") == []


def test_blocking_gate_abort_keeps_gating_phase_artifacts_only() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [
                    _task(
                        "build",
                        schema={"properties": {"coverage": {"type": "number"}}},
                    )
                ],
                "gate": {"name": "coverage", "metric": "coverage", "threshold": 80},
            },
            {"name": "publish", "tasks": [_task("publish")]},
        ]
    )
    executor = ScriptedExecutor(
        {
            "build": {"coverage": 50, "artifacts": [_art("build.json")]},
            "publish": {"artifacts": [_art("publish.json")]},
        }
    )
    approvals = AutoApprovalChannel(Decision.ABORT)

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor, approvals).run(spec))

    assert isinstance(info.value.cause, GateAbort)
    result = info.value.result
    assert _paths(result.artifacts) == ["build.json"]
    assert result.gates[0].verdict is Verdict.BLOCK
    assert result.gates[0].decision == "abort"
    assert result.error is not None and result.error["kind"] == "GateAbort"
    assert executor.calls_for("publish") == []
    assert _paths(approvals.requests[0]["artifacts"]) == ["build.json"]


def test_blocking_gate_proceed_records_override_and_continues() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80},
            },
            {"name": "publish", "tasks": [_task("publish")]},
        ]
    )
    executor = ScriptedExecutor({"build": {"coverage": 50, "artifacts": []}})
    approvals = AutoApprovalChannel(Decision.PROCEED)

    result = asyncio.run(_runner(executor, approvals).run(spec))

    assert result.success is True
    assert result.gates[0].decision == "proceed"
    assert [warning["kind"] for warning in result.warnings] == ["gate_override"]
    assert len(executor.calls_for("publish")) == 1


def test_warning_gate_notifies_without_requesting_approval() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80, "on_fail": "warn"},
            }
        ]
    )
    executor = ScriptedExecutor({"build": {"coverage": 70, "artifacts": []}})
    approvals = AutoApprovalChannel(Decision.ABORT)

    result = asyncio.run(_runner(executor, approvals).run(spec))

    assert result.success is True
    assert result.gates[0].verdict is Verdict.WARN
    assert approvals.requests == []
    assert len(approvals.notifications) == 1
    assert result.warnings[0]["kind"] == "gate_warning"


def test_warning_gate_escalates_past_block_threshold() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {
                    "metric": "coverage",
                    "threshold": 80,
                    "on_fail": "warn",
                    "block_threshold": 50,
                },
            }
        ]
    )
    executor = ScriptedExecutor({"build": {"coverage": 30, "artifacts": []}})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor, AutoApprovalChannel(Decision.ABORT)).run(spec))

    assert info.value.result.gates[0].verdict is Verdict.BLOCK


def test_gate_on_missing_metric_field_aborts() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80},
            }
        ]
    )
    executor = ScriptedExecutor({"build": {"artifacts": []}})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec))

    assert isinstance(info.value.cause, GateEvaluationError)


def test_convergence_loop_stops_when_target_is_met() -> None:
    executor = ScriptedExecutor({"implement": _implement, "assess": _scores(40, 80, 100)})

    result = asyncio.run(_runner(executor).run(_loop_spec()))

    loop = result.loops["refine"]
    assert loop["iterations"] == 3
    assert loop["converged"] is True
    assert loop["stop_reason"] == "target-met"
    assert [record["score"] for record in loop["history"]] == [40, 80, 100]
    assert result.success is True
    assert result.converged is True
    assert result.outputs["refine"]["score"] == 100
    assert result.outputs["implement"]["files"] == ["main-3.tf"]
    assert dict(executor.calls_for("report")[0].payload) == {"files": ["main-3.tf"]}


def test_loop_feedback_seeds_next_iteration() -> None:
    executor = ScriptedExecutor({"implement": _implement, "assess": _scores(40, 90)})

    asyncio.run(_runner(executor).run(_loop_spec()))

    feedback = [request.payload["feedback"] for request in executor.calls_for("implement")]
    assert feedback == [None, ["raise 40"]]
    assert [request.iteration for request in executor.calls_for("implement")] == [1, 2]


def test_loop_artifacts_are_tagged_with_iteration() -> None:
    executor = ScriptedExecutor({"implement": _implement, "assess": _scores(10, 90)})

    result = asyncio.run(_runner(executor).run(_loop_spec()))

    loop_entries = [item for item in result.artifacts if item["phase"] == "implement"]
    assert _paths(loop_entries) == ["impl-1.tf", "impl-2.tf"]
    assert [item["iteration"] for item in loop_entries] == [1, 2]


def test_loop_stops_at_max_iterations_without_converging() -> None:
    executor = ScriptedExecutor({"implement": _implement, "assess": _scores(10, 20, 30, 40)})

    result = asyncio.run(_runner(executor).run(_loop_spec(max_iterations=3)))

    loop = result.loops["refine"]
    assert loop["iterations"] == 3
    assert loop["converged"] is False
    assert loop["stop_reason"] == "max-iterations"
    assert result.success is False
    assert result.error is None
    assert any(warning["kind"] == "loop_not_converged" for warning in result.warnings)
    assert len(executor.calls_for("report")) == 1


def test_critical_findings_force_iterations_until_cap() -> None:
    spec = _loop_spec(
        max_iterations=2,
        critical={"path": "scan.findings", "where": {"severity": "critical"}},
    )
    executor = ScriptedExecutor(
        {
            "implement": _implement,
            "scan": {"findings": [{"id": "S1", "severity": "CRITICAL"}], "artifacts": []},
            "assess": _scores(100),
        }
    )

    result = asyncio.run(_runner(executor).run(spec))

    loop = result.loops["refine"]
    assert loop["iterations"] == 2
    assert loop["converged"] is False
    assert loop["stop_reason"] == "critical-findings"
    assert len(loop["history"][0]["critical_findings"]) == 1


def test_critical_findings_cleared_lets_loop_converge() -> None:
    spec = _loop_spec(critical={"path": "scan.findings", "where": {"severity": "critical"}})
    executor = ScriptedExecutor(
        {
            "implement": _implement,
            "scan": [
                {"findings": [{"severity": "critical"}, {"severity": "low"}], "artifacts": []},
                {"findings": [{"severity": "low"}], "artifacts": []},
            ],
            "assess": _scores(100),
        }
    )

    result = asyncio.run(_runner(executor).run(spec))

    assert result.loops["refine"]["iterations"] == 2
    assert result.loops["refine"]["converged"] is True


def test_gate_inside_loop_is_evaluated_every_iteration() -> None:
    spec = _spec(
        [
            {
                "kind": "loop",
                "name": "refine",
                "score": "assess.score",
                "phases": [
                    {
                        "name": "assess",
                        "tasks": [
                            _task(
                                "assess",
                                schema={
                                    "required": ["score"],
                                    "properties": {"score": {"type": "number"}},
                                },
                            )
                        ],
                        "gate": {"metric": "score", "threshold": 50, "on_fail": "warn"},
                    }
                ],
            }
        ]
    )
    executor = ScriptedExecutor({"assess": _scores(40, 70, 90)})

    result = asyncio.run(_runner(executor).run(spec))

    assert [gate.iteration for gate in result.gates] == [1, 2, 3]
    assert [gate.verdict for gate in result.gates] == [Verdict.WARN, Verdict.PASS, Verdict.PASS]


def test_schema_violation_degrades_optional_phase() -> None:
    spec = _spec(
        [
            {
                "name": "docs",
                "optional": True,
                "default_output": {"documents": []},
                "tasks": [
                    _task(
                        "docs",
                        schema={
                            "required": ["documents"],
                            "properties": {"documents": {"type": "array"}},
                        },
                    )
                ],
            },
            {
                "name": "review",
                "tasks": [_task("review", inputs={"docs": "$phases.docs.documents"})],
            },
        ]
    )
    executor = ScriptedExecutor({"docs": {"artifacts": [_art("docs.md", "md")]}})

    result = asyncio.run(_runner(executor).run(spec))

    assert result.success is True
    assert result.phases["docs"] == "degraded"
    assert result.outputs["docs"] == {"documents": []}
    assert result.artifacts == []
    assert result.warnings[0]["kind"] == "phase_degraded"
    assert result.warnings[0]["error"]["kind"] == "SchemaViolation"
    assert dict(executor.calls_for("review")[0].payload) == {"docs": []}


def test_schema_violation_aborts_required_phase() -> None:
    spec = _spec(
        [
            {
                "name": "docs",
                "tasks": [
                    _task(
                        "docs",
                        schema={
                            "required": ["documents"],
                            "properties": {"documents": {"type": "array"}},
                        },
                    )
                ],
            }
        ]
    )
    executor = ScriptedExecutor({"docs": {"documents": "not-a-list", "artifacts": []}})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec))

    failure = info.value.cause
    assert isinstance(failure, RequiredPhaseFailure)
    assert isinstance(failure.cause, SchemaViolation)
    assert failure.cause.field == "documents"


def test_executor_failure_degrades_optional_phase() -> None:
    spec = _spec(
        [
            {
                "name": "extras",
                "mode": "optional",
                "tasks": [_task("extras")],
            }
        ]
    )
    executor = ScriptedExecutor({"extras": TaskExecutionError("agent offline", task="extras")})

    result = asyncio.run(_runner(executor).run(spec))

    assert result.phases["extras"] == "degraded"
    assert result.outputs["extras"] == {}


def test_missing_input_fails_before_submission() -> None:
    spec = _spec([{"name": "deploy", "tasks": [_task("deploy", inputs={"env": "$params.env"})]}])
    executor = ScriptedExecutor()

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec))

    assert isinstance(info.value.cause.cause, MissingInput)
    assert executor.calls == []


def test_unexpected_executor_exception_is_wrapped() -> None:
    spec = _spec([{"name": "deploy", "tasks": [_task("deploy")]}])
    executor = ScriptedExecutor({"deploy": ValueError("kaboom")})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec))

    cause = info.value.cause.cause
    assert isinstance(cause, TaskExecutionError)
    assert "kaboom" in str(cause)


def test_identical_runs_produce_identical_results() -> None:
    spec = _loop_spec()

    def _once() -> dict[str, Any]:
        executor = ScriptedExecutor({"implement": _implement, "assess": _scores(50, 95)})
        result = asyncio.run(_runner(executor).run(spec, run_id="run-fixed"))
        return result.to_dict(include_timing=False)

    assert _once() == _once()


def test_cancel_signal_interrupts_running_task() -> None:
    spec = _spec(
        [
            {"name": "fast", "tasks": [_task("fast")]},
            {"name": "slow", "tasks": [_task("slow")]},
        ]
    )
    executor = ScriptedExecutor(
        {"fast": {"artifacts": [_art("fast.json")]}},
        delays={"slow": 5.0},
    )

    async def _scenario() -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        await _runner(executor).run(spec, cancel=cancel)

    started = time.monotonic()
    with pytest.raises(PipelineError) as info:
        asyncio.run(_scenario())

    assert time.monotonic() - started < 2.0
    assert isinstance(info.value.cause.cause, Cancelled)
    assert _paths(info.value.result.artifacts) == ["fast.json"]


def test_deadline_cancels_run() -> None:
    spec = _spec([{"name": "slow", "tasks": [_task("slow")]}])
    executor = ScriptedExecutor(delays={"slow": 5.0})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor).run(spec, deadline_seconds=0.05))

    assert isinstance(info.value.cause.cause, Cancelled)
    assert "deadline" in str(info.value.cause.cause)


class _SilentApprovals(AutoApprovalChannel):
    async def request_approval(self, context: dict[str, Any]) -> Decision:
        await asyncio.sleep(10)
        return Decision.PROCEED


def test_approval_wait_times_out() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80},
            }
        ]
    )
    executor = ScriptedExecutor({"build": {"coverage": 10, "artifacts": []}})
    runner = _runner(executor, _SilentApprovals(), approval_timeout_seconds=0.05)

    with pytest.raises(PipelineError) as info:
        asyncio.run(runner.run(spec))

    assert isinstance(info.value.cause.cause, Cancelled)
    assert info.value.result.gates[0].decision == "cancelled"


def test_events_are_emitted_and_hook_failures_are_ignored() -> None:
    spec = _spec([{"name": "only", "tasks": [_task("only")]}])
    events: list[dict[str, Any]] = []

    def _hook(event: dict[str, Any]) -> None:
        events.append(event)
        raise RuntimeError("observer broke")

    result = asyncio.run(_runner(ScriptedExecutor(), event_hook=_hook).run(spec))

    assert result.success is True
    names = [event["event"] for event in events]
    assert names[0] == "pipeline_start"
    assert "task_submitted" in names
    assert "task_completed" in names
    assert "phase_complete" in names
    assert names[-1] == "pipeline_complete"


def test_degraded_optional_phase_skips_its_gates() -> None:
    spec = _spec(
        [
            {
                "name": "docs",
                "optional": True,
                "tasks": [_task("docs", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80, "on_fail": "warn"},
            },
            {"name": "after", "tasks": [_task("after")]},
        ]
    )
    executor = ScriptedExecutor({"docs": TaskExecutionError("docs agent offline", task="docs")})
    events: list[dict[str, Any]] = []

    result = asyncio.run(_runner(executor, event_hook=events.append).run(spec))

    assert result.success is True
    assert result.phases == {"docs": "degraded", "after": "completed"}
    assert result.gates == []
    assert [warning["kind"] for warning in result.warnings] == ["phase_degraded", "gate_skipped"]
    assert result.warnings[1]["gate"] == "docs-gate"
    assert "gate_skipped" in [event["event"] for event in events]


class _InvalidDecisionChannel(AutoApprovalChannel):
    async def request_approval(self, context: dict[str, Any]) -> Decision:
        return "yes"  # type: ignore[return-value]


def test_invalid_approval_decision_aborts_with_partial_result() -> None:
    spec = _spec(
        [
            {
                "name": "build",
                "tasks": [_task("build", schema={"properties": {"coverage": {"type": "number"}}})],
                "gate": {"metric": "coverage", "threshold": 80},
            },
            {"name": "publish", "tasks": [_task("publish")]},
        ]
    )
    executor = ScriptedExecutor({"build": {"coverage": 10, "artifacts": [_art("build.json")]}})

    with pytest.raises(PipelineError) as info:
        asyncio.run(_runner(executor, _InvalidDecisionChannel()).run(spec))

    assert isinstance(info.value.cause, GateAbort)
    assert "'yes'" in str(info.value.cause)
    result = info.value.result
    assert result.gates[0].decision == "invalid"
    assert _paths(result.artifacts) == ["build.json"]
    assert executor.calls_for("publish") == []


def test_phase_gates_are_evaluated_in_declaration_order() -> None:
    spec = _spec(
        [
            {
                "name": "validate",
                "mode": "parallel-fan-out",
                "tasks": [
                    _task("syntax", schema={"properties": {"valid": {"type": "boolean"}}}),
                    _task("scan", schema={"properties": {"findings": {"type": "array"}}}),
                ],
                "gates": [
                    {
                        "name": "syntax-valid",
                        "metric": "syntax.valid",
                        "comparison": "==",
                        "threshold": True,
                    },
                    {
                        "name": "no-critical",
                        "metric": {
                            "kind": "count",
                            "path": "scan.findings",
                            "where": {"severity": "critical"},
                        },
                        "comparison": "==",
                        "threshold": 0,
                        "on_fail": "warn",
                    },
                ],
            }
        ]
    )
    executor = ScriptedExecutor(
        {
            "syntax": {"valid": True, "artifacts": []},
            "scan": {"findings": [{"severity": "critical"}], "artifacts": []},
        }
    )
    approvals = AutoApprovalChannel(Decision.ABORT)

    result = asyncio.run(_runner(executor, approvals).run(spec))

    assert [gate.gate for gate in result.gates] == ["syntax-valid", "no-critical"]
    assert [gate.verdict for gate in result.gates] == [Verdict.PASS, Verdict.WARN]
    assert len(approvals.notifications) == 1
    assert approvals.requests == []
