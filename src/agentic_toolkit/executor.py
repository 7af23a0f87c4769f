from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from agentic_toolkit.backends.base import BackendExecutionError, ExecutionBackend, ExecutionResult
from agentic_toolkit.config import ExecutorConfig
from agentic_toolkit.resolver import BlockedTask, blocked_tasks, next_task, parallel_batch
from agentic_toolkit.rules import PolicyBlockedError, PolicyGate, check_outputs
from agentic_toolkit.state.execution_log import ExecutionLog
from agentic_toolkit.state.lease import (
    LeaseError,
    LeaseLostError,
    LoopAlreadyRunningError,
    RunLease,
)
from agentic_toolkit.state.task_store import StoreError, Task, TaskStore

logger = logging.getLogger(__name__)

StopReason = Literal["no_work", "max_iterations", "error", "stopped"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ExecutionOptions:
    max_iterations: int = 100
    delay_between_tasks_ms: int = 2000
    rules_check: bool = True
    parallel_execution: bool = False
    continue_on_error: bool = False
    max_batch: int = 3
    recover_in_progress: bool = True

    @classmethod
    def from_config(cls, config: ExecutorConfig) -> ExecutionOptions:
        return cls(
            max_iterations=config.max_iterations,
            delay_between_tasks_ms=config.delay_between_tasks_ms,
            rules_check=config.rules_check,
            parallel_execution=config.parallel_execution,
            continue_on_error=config.continue_on_error,
            max_batch=config.max_batch,
            recover_in_progress=config.recover_in_progress,
        )


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str | None = None
    iterations: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stop_reason: StopReason | None = None
    error: str | None = None
    blocked: list[BlockedTask] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "iterations": self.iterations,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "stop_reason": self.stop_reason,
            "error": self.error,
            "blocked": [item.to_dict() for item in self.blocked],
        }


class AutoExecutor:
    """Drives the task store until no runnable work remains.

    Each iteration reloads the store, selects work first-fit (or as an
    independent batch), and runs the selected tasks one after another through
    the backend. A task that keeps failing returns to ``pending`` and is
    picked again on the next iteration; only ``max_iterations`` bounds those
    retries.
    """

    def __init__(
        self,
        store: TaskStore,
        backend: ExecutionBackend,
        execution_log: ExecutionLog,
        *,
        gate: PolicyGate | None = None,
        lease: RunLease | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.log = execution_log
        self.gate = gate
        self.lease = lease
        self.workspace_root = (workspace_root or store.path.parent).resolve()
        self.last_summary: RunSummary | None = None
        self.current_task_id: str | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._current_call: asyncio.Future[ExecutionResult] | None = None
        self._lease_error: LeaseError | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Request a cooperative stop; the in-flight backend call is cancelled."""
        self._stop_event.set()
        if self._current_call is not None and not self._current_call.done():
            self._current_call.cancel()
        logger.info("Stop requested for execution loop")

    async def run(self, options: ExecutionOptions | None = None) -> RunSummary:
        if self._running:
            raise LoopAlreadyRunningError("Execution loop is already running for this store.")
        opts = options or ExecutionOptions()
        self._running = True
        self._stop_event = asyncio.Event()
        summary = RunSummary(run_id=f"run-{uuid4().hex[:12]}", started_at=_utcnow_iso())
        self.last_summary = summary
        logger.info("Starting execution loop %s: %s", summary.run_id, opts)
        try:
            if self.lease is not None:
                self.lease.acquire(summary.run_id)
            try:
                await self._loop(opts, summary)
            finally:
                self._release_lease()
        finally:
            self._running = False
            summary.ended_at = _utcnow_iso()
            logger.info(
                "Execution loop %s finished after %d iteration(s): %s",
                summary.run_id,
                summary.iterations,
                summary.stop_reason,
            )
        return summary

    def _release_lease(self) -> None:
        if self.lease is None:
            return
        try:
            self.lease.release()
        except LeaseError as exc:
            logger.warning("Could not release run lease: %s", exc)

    def _record_loop_error(self, message: str, exc: Exception, **metadata: Any) -> None:
        logger.error("%s: %s", message, exc)
        self.log.append("error", message, {"error": str(exc), **metadata})

    async def _loop(self, opts: ExecutionOptions, summary: RunSummary) -> None:
        if opts.recover_in_progress:
            try:
                self._recover_in_progress()
            except StoreError as exc:
                self._record_loop_error("Could not recover in-progress tasks", exc)
                if not opts.continue_on_error:
                    summary.stop_reason = "error"
                    summary.error = str(exc)
                    raise

        while summary.iterations < opts.max_iterations:
            if self._stop_event.is_set():
                summary.stop_reason = "stopped"
                break
            summary.iterations += 1
            iteration = summary.iterations
            try:
                self.store.load(strict=True)
                if self.lease is not None:
                    self.lease.heartbeat()
                selected = self._select(opts)
                if not selected:
                    summary.stop_reason = "no_work"
                    summary.blocked = blocked_tasks(self.store)
                    for item in summary.blocked:
                        logger.warning("Task not runnable: %s", item.describe())
                    break
                for task in selected:
                    if self._stop_event.is_set():
                        break
                    if self.lease is not None:
                        self.lease.heartbeat(task_id=task.id)
                    try:
                        await self.execute_task(task, rules_check=opts.rules_check)
                    except (asyncio.CancelledError, LeaseError):
                        summary.failed.append(task.id)
                        raise
                    except (PolicyBlockedError, BackendExecutionError) as exc:
                        summary.failed.append(task.id)
                        if not opts.continue_on_error:
                            summary.stop_reason = "error"
                            summary.error = str(exc)
                            raise
                        continue
                    summary.completed.append(task.id)
            except (StoreError, LeaseError) as exc:
                self._record_loop_error(
                    f"Iteration {iteration} failed", exc, iteration=iteration
                )
                # A lost lease means another loop owns the store now.
                if isinstance(exc, LeaseLostError) or not opts.continue_on_error:
                    summary.stop_reason = "error"
                    summary.error = str(exc)
                    raise
            except asyncio.CancelledError:
                if not self._stop_event.is_set():
                    raise
                summary.stop_reason = "stopped"
                break
            if summary.iterations < opts.max_iterations:
                await self._pause(opts.delay_between_tasks_ms)
        else:
            summary.stop_reason = "max_iterations"

    def _recover_in_progress(self) -> None:
        # Only reached while holding the run, so nobody else owns these tasks.
        self.store.load(strict=True)
        for task in self.store.list_tasks(status="in_progress"):
            logger.warning("Resetting task %s left in_progress by an earlier run", task.id)
            self.store.update_task_status(task.id, "pending")

    def _select(self, opts: ExecutionOptions) -> list[Task]:
        if opts.parallel_execution:
            return parallel_batch(self.store, opts.max_batch)
        task = next_task(self.store)
        return [task] if task is not None else []

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms <= 0 or self._stop_event.is_set():
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            pass

    async def _keep_lease(self, task_id: str) -> None:
        """Heartbeat the lease while a backend call runs; cancel the call if it is lost."""
        assert self.lease is not None
        interval = self.lease.ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                self.lease.heartbeat(task_id=task_id)
            except LeaseError as exc:
                logger.error("Run lease lost while task %s was running: %s", task_id, exc)
                self._lease_error = exc
                if self._current_call is not None and not self._current_call.done():
                    self._current_call.cancel()
                return

    async def _call_backend(self, task: Task) -> ExecutionResult:
        self._lease_error = None
        self._current_call = asyncio.ensure_future(self.backend.execute(task))
        keeper = (
            asyncio.ensure_future(self._keep_lease(task.id)) if self.lease is not None else None
        )
        try:
            return await self._current_call
        except asyncio.CancelledError:
            if self._lease_error is not None:
                raise self._lease_error from None
            raise
        except BackendExecutionError:
            raise
        except Exception as exc:
            raise BackendExecutionError(
                f"Backend raised {type(exc).__name__}: {exc}", backend=self.backend.name
            ) from exc
        finally:
            self._current_call = None
            if keeper is not None:
                keeper.cancel()
                await asyncio.gather(keeper, return_exceptions=True)

    def _reset_to_pending(self, task_id: str) -> None:
        try:
            self.store.update_task_status(task_id, "pending")
        except StoreError as exc:
            logger.error("Could not return task %s to pending: %s", task_id, exc)

    async def execute_task(self, task: Task, *, rules_check: bool = True) -> ExecutionResult:
        """Run one task through the gate and backend, persisting every transition.

        Failures are written to the execution log and the task is returned to
        ``pending`` before the error is re-raised.
        """
        self.store.update_task_status(task.id, "in_progress")
        self.current_task_id = task.id
        started = time.monotonic()
        self.log.append(
            "start",
            task.title or task.id,
            {"task_id": task.id, "agent_type": task.agent_type},
        )
        logger.info("Executing task %s (%s)", task.id, task.title)

        def _duration_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            if rules_check and self.gate is not None:
                check_outputs(self.gate, task.output_files, self.workspace_root)
            result = await self._call_backend(task)
            if not result.success:
                raise BackendExecutionError(
                    result.error or "Task execution failed", backend=self.backend.name
                )
        except LeaseError as exc:
            # The store belongs to whoever holds the lease now; leave the task as it is.
            self.log.append(
                "fail",
                task.title or task.id,
                {
                    "task_id": task.id,
                    "error": str(exc),
                    "kind": "lease",
                    "duration_ms": _duration_ms(),
                },
            )
            logger.error("Task %s abandoned after losing the run lease: %s", task.id, exc)
            raise
        except (PolicyBlockedError, BackendExecutionError) as exc:
            kind = "policy" if isinstance(exc, PolicyBlockedError) else "backend"
            self._reset_to_pending(task.id)
            self.log.append(
                "fail",
                task.title or task.id,
                {
                    "task_id": task.id,
                    "error": str(exc),
                    "kind": kind,
                    "duration_ms": _duration_ms(),
                },
            )
            logger.warning("Task %s ran and failed (%s): %s", task.id, kind, exc)
            raise
        except asyncio.CancelledError:
            self._reset_to_pending(task.id)
            self.log.append(
                "fail",
                task.title or task.id,
                {
                    "task_id": task.id,
                    "error": "Execution stopped before the task finished",
                    "kind": "stopped",
                    "duration_ms": _duration_ms(),
                },
            )
            raise
        finally:
            self.current_task_id = None

        try:
            self.store.update_task_status(task.id, "completed")
        except StoreError:
            self._reset_to_pending(task.id)
            raise
        self.log.append(
            "complete",
            task.title or task.id,
            {"task_id": task.id, "duration_ms": _duration_ms(), "result": result.output},
        )
        logger.info("Task %s completed", task.id)
        return result
