from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["echo", "command"]
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass(slots=True)
class StoreConfig:
    tasks_file: str = "tasks.json"
    log_file: str = "execution-log.json"
    log_capacity: int = 1000
    lease_file: str = "tasks.json.lease"
    lease_ttl_seconds: float = 300.0


@dataclass(slots=True)
class ExecutorConfig:
    max_iterations: int = 100
    delay_between_tasks_ms: int = 2000
    rules_check: bool = True
    parallel_execution: bool = False
    continue_on_error: bool = False
    max_batch: int = 3
    backend: BackendName = "echo"
    command: str = ""
    task_timeout_seconds: float = 0.0
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5
    recover_in_progress: bool = True


@dataclass(slots=True)
class RulesConfig:
    disabled: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ToolkitConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ToolkitConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ToolkitConfig:
        config = cls(
            store=StoreConfig(**data.get("store", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            rules=RulesConfig(**data.get("rules", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        level = self.logging.level.strip().upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
        self.logging.level = level
        if self.executor.backend not in {"echo", "command"}:
            raise ConfigError(f"Unsupported executor backend: {self.executor.backend}")
        if self.executor.backend == "command" and not self.executor.command.strip():
            raise ConfigError("executor.command is required when executor.backend = 'command'")
        if self.executor.max_iterations < 1:
            raise ConfigError("executor.max_iterations must be >= 1")
        if self.executor.max_batch < 1:
            raise ConfigError("executor.max_batch must be >= 1")
        if self.store.log_capacity < 1:
            raise ConfigError("store.log_capacity must be >= 1")

    def to_dict(self) -> dict:
        return {
            "store": {
                "tasks_file": self.store.tasks_file,
                "log_file": self.store.log_file,
                "log_capacity": self.store.log_capacity,
                "lease_file": self.store.lease_file,
                "lease_ttl_seconds": self.store.lease_ttl_seconds,
            },
            "executor": {
                "max_iterations": self.executor.max_iterations,
                "delay_between_tasks_ms": self.executor.delay_between_tasks_ms,
                "rules_check": self.executor.rules_check,
                "parallel_execution": self.executor.parallel_execution,
                "continue_on_error": self.executor.continue_on_error,
                "max_batch": self.executor.max_batch,
                "backend": self.executor.backend,
                "command": self.executor.command,
                "task_timeout_seconds": self.executor.task_timeout_seconds,
                "max_retries": self.executor.max_retries,
                "retry_backoff_seconds": self.executor.retry_backoff_seconds,
                "recover_in_progress": self.executor.recover_in_progress,
            },
            "rules": {
                "disabled": list(self.rules.disabled),
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ToolkitConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("store", "executor", "rules", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ToolkitConfig:
    if not path.exists():
        return ToolkitConfig.default()
    return ToolkitConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ToolkitConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
