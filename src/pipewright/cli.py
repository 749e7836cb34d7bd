from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from pipewright.approval import ApprovalChannel, AutoApprovalChannel, ConsoleApprovalChannel
from pipewright.config import PipewrightConfig, load_config, save_config
from pipewright.definition import builtin_definition, list_builtin_definitions, load_definition
from pipewright.errors import PipelineError, PipewrightError
from pipewright.executors import (
    CommandExecutor,
    ExecutorGateway,
    ExecutorRouter,
    ResilientExecutor,
    RetryPolicy,
    ScriptedExecutor,
)
from pipewright.models import Decision, LoopSpec, PipelineResult, PipelineSpec
from pipewright.observe import EventHook, JsonlEventLog, LoggingEventHook, combine_hooks
from pipewright.runner import PipelineRunner
from pipewright.store import RunStore


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PipewrightConfig
    store: RunStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except PipewrightError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=RunStore(config.state_path(repo_root)),
    )


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_params(pairs: tuple[str, ...], params_file: Path | None) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if params_file is not None:
        try:
            loaded = json.loads(params_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"{params_file} is not valid JSON: {exc}") from exc
        if not isinstance(loaded, dict):
            raise click.BadParameter(f"{params_file} must contain a JSON object.")
        params.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--param")
        params[key.strip()] = _parse_value(value)
    return params


def _build_resilient(
    config: PipewrightConfig,
    command: list[str],
    repo_root: Path,
    event_hook: EventHook,
    *,
    name: str,
) -> ResilientExecutor:
    primary = CommandExecutor(
        command,
        working_directory=repo_root,
        event_hook=event_hook,
        name=name,
    )
    fallback = None
    if config.executor.fallback_command:
        fallback = CommandExecutor(
            config.executor.fallback_command,
            working_directory=repo_root,
            event_hook=event_hook,
            name="fallback",
        )
    policy = RetryPolicy(
        max_retries=max(0, int(config.executor.max_retries)),
        backoff_seconds=max(0.0, float(config.executor.retry_backoff_seconds)),
        timeout_seconds=max(1.0, float(config.executor.timeout_seconds)),
    )
    return ResilientExecutor(
        primary_name=name,
        primary=primary,
        retry_policy=policy,
        fallback_name="fallback" if fallback else None,
        fallback=fallback,
        event_hook=event_hook,
    )


def _build_gateway(
    config: PipewrightConfig, repo_root: Path, event_hook: EventHook
) -> ExecutorRouter:
    default = _build_resilient(
        config, config.executor.command, repo_root, event_hook, name="primary"
    )
    routes = {
        executor_id: _build_resilient(config, command, repo_root, event_hook, name=executor_id)
        for executor_id, command in config.executor.routes.items()
    }
    return ExecutorRouter(routes, default=default)


def _build_approvals(mode: str) -> ApprovalChannel:
    if mode == "proceed":
        return AutoApprovalChannel(Decision.PROCEED)
    if mode == "abort":
        return AutoApprovalChannel(Decision.ABORT)
    return ConsoleApprovalChannel()


async def _run_with_signals(
    runner: PipelineRunner,
    spec: PipelineSpec,
    params: dict[str, Any],
    *,
    run_id: str,
    deadline_seconds: float | None,
) -> PipelineResult:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        # only the main thread of a Unix event loop accepts signal handlers
        pass
    try:
        return await runner.run(
            spec,
            params,
            run_id=run_id,
            cancel=cancel,
            deadline_seconds=deadline_seconds,
        )
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _echo_result(result: PipelineResult, saved: Path | None) -> None:
    status = "succeeded" if result.success else "did not succeed"
    click.echo(f"Pipeline {result.pipeline} {status}")
    click.echo(f"Run ID: {result.run_id}")
    for phase, phase_status in result.phases.items():
        click.echo(f"  {phase:<24} {phase_status}")
    for name, loop in result.loops.items():
        click.echo(
            f"Loop {name}: converged={loop.get('converged')} score={loop.get('score')} "
            f"iterations={loop.get('iterations')} ({loop.get('stop_reason')})"
        )
    click.echo(f"Artifacts: {len(result.artifacts)}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning.get('kind')} {warning.get('phase') or warning.get('loop')}")
    if saved is not None:
        click.echo(f"Saved: {saved}")


@click.group()
def cli() -> None:
    """Pipewright CLI."""


@cli.command("init")
@click.option("--approve", type=click.Choice(["prompt", "proceed", "abort"]), default=None)
@click.option("--config", "config_value", default="pipewright.toml", show_default=True)
def init_command(approve: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if approve:
        runtime.config.approval.mode = approve  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)
    runtime.store.runs_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Pipewright in {repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"State: {runtime.store.state_dir}")
    click.echo(f"Approval mode: {runtime.config.approval.mode}")


@cli.command("validate")
@click.argument("definition")
def validate_command(definition: str) -> None:
    try:
        spec = load_definition(definition)
    except PipewrightError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Pipeline {spec.name} is valid ({len(spec.iter_phases())} phases)")
    for step in spec.steps:
        if isinstance(step, LoopSpec):
            click.echo(
                f"  loop {step.name} (max {step.max_iterations}, target {step.target_score:g})"
            )
            for phase in step.phases:
                tasks = ", ".join(task.name for task in phase.tasks)
                click.echo(f"    {phase.name:<22} {phase.mode.value:<18} {tasks}")
            continue
        tasks = ", ".join(task.name for task in step.tasks)
        flag = " optional" if step.optional else ""
        click.echo(f"  {step.name:<24} {step.mode.value:<18} {tasks}{flag}")


@cli.command("run")
@click.argument("definition")
@click.option("--param", "params", multiple=True, help="Pipeline parameter as KEY=VALUE.")
@click.option(
    "--params-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option("--dry-run", is_flag=True, default=False, help="Use scripted placeholder results.")
@click.option("--approve", type=click.Choice(["prompt", "proceed", "abort"]), default=None)
@click.option("--deadline", type=float, default=None, help="Run deadline in seconds.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="pipewright.toml", show_default=True)
def run_command(
    definition: str,
    params: tuple[str, ...],
    params_file: Path | None,
    dry_run: bool,
    approve: str | None,
    deadline: float | None,
    as_json: bool,
    verbose: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    config = runtime.config
    _configure_logging(config.logging.level, verbose)

    try:
        spec = load_definition(definition)
    except PipewrightError as exc:
        raise click.ClickException(str(exc)) from exc
    run_params = _parse_params(params, params_file)

    run_id = f"run-{uuid4().hex[:12]}"
    hooks: list[EventHook] = [LoggingEventHook()]
    if config.logging.event_log:
        hooks.append(JsonlEventLog(runtime.store.events_path(run_id)))
    event_hook = combine_hooks(*hooks)

    gateway: ExecutorGateway
    if dry_run:
        gateway = ScriptedExecutor()
    else:
        gateway = _build_gateway(config, repo_root, event_hook)
    runner = PipelineRunner(
        gateway,
        _build_approvals(approve or config.approval.mode),
        event_hook=event_hook,
        approval_timeout_seconds=config.approval.timeout_seconds or None,
    )
    deadline_seconds = deadline if deadline is not None else (config.run.deadline_seconds or None)

    try:
        result = asyncio.run(
            _run_with_signals(
                runner,
                spec,
                run_params,
                run_id=run_id,
                deadline_seconds=deadline_seconds,
            )
        )
    except PipelineError as exc:
        saved = runtime.store.save(exc.result)
        if as_json:
            click.echo(json.dumps(exc.result.to_dict(), ensure_ascii=False, indent=2))
        else:
            _echo_result(exc.result, saved)
        raise click.ClickException(str(exc)) from exc
    except PipewrightError as exc:
        raise click.ClickException(str(exc)) from exc

    saved = runtime.store.save(result)
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        _echo_result(result, saved)
    if not result.success and not dry_run:
        raise click.ClickException("Pipeline finished without converging.")


@cli.command("runs")
@click.option("--config", "config_value", default="pipewright.toml", show_default=True)
def runs_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runs = runtime.store.list_runs()
    if not runs:
        click.echo("No runs recorded.")
        return
    for item in runs:
        status = "ok" if item["success"] else "failed"
        click.echo(
            f"{item['run_id']} {item['pipeline']:<24} {status:<6} "
            f"artifacts={item['artifacts']} {item['started_at']}"
        )


@cli.command("show")
@click.argument("run_id")
@click.option("--config", "config_value", default="pipewright.toml", show_default=True)
def show_command(run_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        result = runtime.store.load(run_id)
    except PipewrightError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))


@cli.command("pipelines")
def pipelines_command() -> None:
    for name in list_builtin_definitions():
        spec = builtin_definition(name)
        click.echo(f"{name:<24} {spec.title or spec.description}")
