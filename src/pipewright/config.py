from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pipewright.errors import PipewrightError

ApprovalMode = Literal["prompt", "proceed", "abort"]
APPROVAL_MODES = ("prompt", "proceed", "abort")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class ConfigError(PipewrightError):
    pass


@dataclass(slots=True)
class ExecutorConfig:
    command: list[str] = field(default_factory=lambda: ["pipewright-agent", "{executor}"])
    fallback_command: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0
    routes: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class ApprovalConfig:
    mode: ApprovalMode = "prompt"
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class RunConfig:
    deadline_seconds: float = 0.0
    state_dir: str = ".pipewright"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    event_log: bool = True


@dataclass(slots=True)
class PipewrightConfig:
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    run: RunConfig = field(default_factory=RunConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PipewrightConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PipewrightConfig:
        try:
            config = cls(
                executor=ExecutorConfig(**data.get("executor", {})),
                approval=ApprovalConfig(**data.get("approval", {})),
                run=RunConfig(**data.get("run", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        if config.approval.mode not in APPROVAL_MODES:
            raise ConfigError(
                f"approval.mode must be one of {', '.join(APPROVAL_MODES)}, "
                f"got {config.approval.mode!r}"
            )
        if not config.executor.command:
            raise ConfigError("executor.command must not be empty")
        for route, command in config.executor.routes.items():
            if not isinstance(command, list) or not command:
                raise ConfigError(f"executor.routes.{route} must be a non-empty command list")
        config.logging.level = config.logging.level.upper()
        if config.logging.level not in LOG_LEVELS:
            raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
        return config

    def to_dict(self) -> dict:
        return {
            "executor": {
                "command": list(self.executor.command),
                "fallback_command": list(self.executor.fallback_command),
                "max_retries": self.executor.max_retries,
                "retry_backoff_seconds": self.executor.retry_backoff_seconds,
                "timeout_seconds": self.executor.timeout_seconds,
                "routes": {key: list(value) for key, value in self.executor.routes.items()},
            },
            "approval": {
                "mode": self.approval.mode,
                "timeout_seconds": self.approval.timeout_seconds,
            },
            "run": {
                "deadline_seconds": self.run.deadline_seconds,
                "state_dir": self.run.state_dir,
            },
            "logging": {
                "level": self.logging.level,
                "event_log": self.logging.event_log,
            },
        }

    def state_path(self, root: Path) -> Path:
        state_dir = Path(self.run.state_dir)
        return state_dir if state_dir.is_absolute() else root / state_dir


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PipewrightConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("executor", "approval", "run", "logging"):
        lines.append(f"[{section}]")
        tables: dict[str, dict] = {}
        for key, value in data[section].items():
            if isinstance(value, dict):
                tables[key] = value
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        # sub-tables must follow every plain key of their parent section
        for key, table in tables.items():
            if not table:
                continue
            lines.append(f"[{section}.{key}]")
            for name, value in table.items():
                lines.append(f"{json.dumps(name)} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PipewrightConfig:
    if not path.exists():
        return PipewrightConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return PipewrightConfig.from_dict(data)


def save_config(path: Path, config: PipewrightConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
