from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from agentic_toolkit.state.task_store import Task


class BackendExecutionError(RuntimeError):
    """Raised when a backend could not execute a task."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when task execution exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend process cannot be started or supervised."""


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class ExecutionBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(self, task: Task) -> ExecutionResult:
        """Perform the task's work and report the outcome."""
