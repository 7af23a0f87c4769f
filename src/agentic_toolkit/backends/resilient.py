from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentic_toolkit.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    ExecutionBackend,
    ExecutionResult,
)
from agentic_toolkit.state.task_store import Task

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 0.0


class ResilientBackend(ExecutionBackend):
    """Wraps a backend with a per-task timeout and bounded retries.

    A timeout is reported exactly like any other backend failure. With
    ``timeout_seconds <= 0`` calls are not time-limited.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = backend.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(self, task: Task) -> ExecutionResult:
        timeout = self.retry_policy.timeout_seconds
        if timeout <= 0:
            return await self.backend.execute(task)
        try:
            return await asyncio.wait_for(self.backend.execute(task), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Task {task.id} timed out after {timeout:.1f}s",
                backend=self.name,
                retriable=True,
            ) from exc

    async def execute(self, task: Task) -> ExecutionResult:
        errors: list[str] = []
        last_result: ExecutionResult | None = None
        for attempt in range(max(0, self.retry_policy.max_retries) + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.name,
                        "task_id": task.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                result = await self._attempt(task)
            except BackendExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "task_id": task.id,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                last_result = None
                if not exc.retriable:
                    break
                continue
            except Exception as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "task_id": task.id,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": True,
                    }
                )
                last_result = None
                continue
            if result.success:
                return result
            last_result = result
            errors.append(f"{self.name}[{attempt}]: {result.error or 'failed'}")
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": self.name,
                    "task_id": task.id,
                    "attempt": attempt,
                    "error": result.error,
                    "retriable": True,
                }
            )

        # The final attempt ran to completion and reported failure itself.
        if last_result is not None:
            return last_result
        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for task {task.id}. {summary}",
            backend=self.name,
            retriable=False,
        )
