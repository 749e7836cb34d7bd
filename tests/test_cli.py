import json
import sys
from pathlib import Path

from click.testing import CliRunner

from pipewright.cli import cli
from pipewright.config import load_config, save_config
from pipewright.store import RunStore

AGENT_SCRIPT = """\
import json
import sys

request = json.load(sys.stdin)
task = request["task"]
result = {"artifacts": [{"path": task + ".json", "format": "json"}]}
if task == "build":
    result["coverage"] = int(request["input"].get("coverage", 90))
    result["env"] = request["input"]["env"]
print("agent running " + task, file=sys.stderr)
print(json.dumps(result))
"""

DEFINITION = {
    "name": "release",
    "params": {"coverage": 90},
    "phases": [
        {
            "name": "build",
            "tasks": [
                {
                    "name": "build",
                    "executor": "agent",
                    "inputs": {"env": "$params.env", "coverage": "$params.coverage"},
                    "schema": {
                        "required": ["coverage"],
                        "properties": {"coverage": {"type": "number"}, "env": {"type": "string"}},
                    },
                }
            ],
            "gate": {"name": "coverage", "metric": "coverage", "threshold": 80},
        },
        {"name": "publish", "tasks": [{"name": "publish", "executor": "agent"}]},
    ],
}


def _setup(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    script = tmp_path / "agent.py"
    script.write_text(AGENT_SCRIPT, encoding="utf-8")
    config_path = tmp_path / "pipewright.toml"
    config = load_config(config_path)
    config.executor.command = [sys.executable, str(script)]
    config.executor.retry_backoff_seconds = 0.0
    config.executor.timeout_seconds = 30.0
    save_config(config_path, config)
    (tmp_path / "release.json").write_text(json.dumps(DEFINITION), encoding="utf-8")
    return runner


def test_init_writes_config_and_state_dir(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--approve", "abort"])

    assert result.exit_code == 0, result.output
    assert "Initialized Pipewright" in result.output
    assert load_config(tmp_path / "pipewright.toml").approval.mode == "abort"
    assert (tmp_path / ".pipewright" / "runs").is_dir()


def test_pipelines_and_validate_builtins() -> None:
    runner = CliRunner()

    listed = runner.invoke(cli, ["pipelines"])
    validated = runner.invoke(cli, ["validate", "iac-implementation"])

    assert listed.exit_code == 0
    assert "iac-implementation" in listed.output
    assert "security-scanning" in listed.output
    assert validated.exit_code == 0, validated.output
    assert "is valid" in validated.output
    assert "loop iac-convergence" in validated.output


def test_validate_reports_definition_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"name": "x", "phases": []}), encoding="utf-8")

    result = CliRunner().invoke(cli, ["validate", str(broken)])

    assert result.exit_code == 1
    assert "at least one phase" in result.output


def test_run_executes_command_agent_and_stores_result(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run", "release.json", "--param", "env=prod"])

    assert result.exit_code == 0, result.output
    assert "Pipeline release succeeded" in result.output
    stored = RunStore(tmp_path / ".pipewright").list_runs()
    assert len(stored) == 1
    run_id = stored[0]["run_id"]
    assert stored[0]["artifacts"] == 2
    assert (tmp_path / ".pipewright" / "runs" / f"{run_id}.events.jsonl").exists()

    shown = runner.invoke(cli, ["show", run_id])
    payload = json.loads(shown.output)
    assert payload["outputs"]["build"]["env"] == "prod"
    assert [item["path"] for item in payload["artifacts"]] == ["build.json", "publish.json"]

    listed = runner.invoke(cli, ["runs"])
    assert run_id in listed.output


def test_run_aborted_gate_saves_partial_result(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(
        cli,
        [
            "run",
            "release.json",
            "--param",
            "env=dev",
            "--param",
            "coverage=10",
            "--approve",
            "abort",
        ],
    )

    assert result.exit_code == 1
    assert "aborted" in result.output
    stored = RunStore(tmp_path / ".pipewright").list_runs()
    assert stored[0]["success"] is False
    assert stored[0]["artifacts"] == 1


def test_run_requires_declared_params(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run", "release.json"])

    assert result.exit_code == 1
    assert "$params.env" in result.output


def test_dry_run_uses_placeholder_results(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    params_file = tmp_path / "params.json"
    params_file.write_text(json.dumps({"project_name": "demo"}), encoding="utf-8")

    result = CliRunner().invoke(
        cli,
        [
            "run",
            "iac-implementation",
            "--dry-run",
            "--approve",
            "proceed",
            "--params-file",
            str(params_file),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Loop iac-convergence" in result.output
    assert len(RunStore(tmp_path / ".pipewright").list_runs()) == 1


def test_run_rejects_malformed_params(tmp_path: Path, monkeypatch) -> None:
    runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["run", "release.json", "--param", "no-equals-sign"])

    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


def test_show_unknown_run_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["show", "run-missing"])

    assert result.exit_code == 1
    assert "No stored run" in result.output
