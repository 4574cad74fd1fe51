from __future__ import annotations

import json
import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

from foreman.channel import TimeoutPolicy
from foreman.tasks import Specialization

BackendName = Literal["claude", "codex", "echo"]
LogFormat = Literal["json", "text"]
LOG_LEVEL_ENV = "FOREMAN_LOG_LEVEL"


class ConfigError(ValueError):
    """Raised when the configuration file holds invalid values."""


@dataclass(slots=True)
class BackendConfig:
    kind: BackendName = "claude"
    binary: str = ""
    model: str = ""


@dataclass(slots=True)
class ChannelsConfig:
    default_timeout_seconds: float = 300.0
    extended_timeout_seconds: float = 600.0
    extended_specializations: list[str] = field(default_factory=lambda: ["tester", "fixer"])

    def timeout_policy(self) -> TimeoutPolicy:
        return TimeoutPolicy(
            default_seconds=float(self.default_timeout_seconds),
            extended_seconds=float(self.extended_timeout_seconds),
            extended=frozenset(Specialization(item) for item in self.extended_specializations),
        )


@dataclass(slots=True)
class ConvergenceConfig:
    max_iterations: int = 3
    fixer: str = "fixer"
    checkable_specializations: list[str] = field(default_factory=lambda: ["tester"])


@dataclass(slots=True)
class StateConfig:
    task_log: str = "task-log.json"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = "text"


@dataclass(slots=True)
class ForemanConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        try:
            config = cls(
                backend=BackendConfig(**data.get("backend", {})),
                channels=ChannelsConfig(**data.get("channels", {})),
                convergence=ConvergenceConfig(**data.get("convergence", {})),
                state=StateConfig(**data.get("state", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.backend.kind not in ("claude", "codex", "echo"):
            raise ConfigError(f"Unsupported backend kind: {self.backend.kind}")
        if self.channels.default_timeout_seconds <= 0 or self.channels.extended_timeout_seconds <= 0:
            raise ConfigError("Channel timeouts must be positive.")
        if self.convergence.max_iterations < 0:
            raise ConfigError("convergence.max_iterations must be >= 0.")
        if self.logging.format not in ("json", "text"):
            raise ConfigError(f"Unsupported log format: {self.logging.format}")
        names = [
            *self.channels.extended_specializations,
            *self.convergence.checkable_specializations,
            self.convergence.fixer,
        ]
        for name in names:
            try:
                Specialization(name)
            except ValueError as exc:
                raise ConfigError(f"Unknown specialization in config: {name}") from exc

    def to_dict(self) -> dict:
        return {
            "backend": {
                "kind": self.backend.kind,
                "binary": self.backend.binary,
                "model": self.backend.model,
            },
            "channels": {
                "default_timeout_seconds": self.channels.default_timeout_seconds,
                "extended_timeout_seconds": self.channels.extended_timeout_seconds,
                "extended_specializations": list(self.channels.extended_specializations),
            },
            "convergence": {
                "max_iterations": self.convergence.max_iterations,
                "fixer": self.convergence.fixer,
                "checkable_specializations": list(self.convergence.checkable_specializations),
            },
            "state": {
                "task_log": self.state.task_log,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


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


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backend", "channels", "convergence", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return ForemanConfig.from_dict(data)


def save_config(path: Path, config: ForemanConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")


def resolve_log_level(config: ForemanConfig) -> str:
    return os.environ.get(LOG_LEVEL_ENV, "").strip() or config.logging.level


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # sys.stderr is looked up per logger so swapped streams are honored
    return structlog.PrintLogger(sys.stderr)


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Configure structlog for the CLI.

    Logs go to stderr so stdout stays free for command output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: 'json' for machine-readable lines, 'text' for the console.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
