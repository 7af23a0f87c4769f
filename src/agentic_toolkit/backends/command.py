from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

from agentic_toolkit.backends.base import (
    BackendProcessError,
    ExecutionBackend,
    ExecutionResult,
)
from agentic_toolkit.state.task_store import Task

logger = logging.getLogger(__name__)

# Exit code the shell uses for "command not found".
_COMMAND_NOT_FOUND = 127


class CommandBackend(ExecutionBackend):
    """Runs a shell command per task; a zero exit code means success.

    The template is formatted with shell-quoted ``task_id``, ``title``,
    ``agent_type`` and ``phase_id`` fields.
    """

    name = "command"

    def __init__(
        self,
        command_template: str,
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if not command_template.strip():
            raise ValueError("CommandBackend requires a non-empty command template.")
        self.command_template = command_template
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, task: Task) -> str:
        fields = {
            "task_id": task.id,
            "title": task.title,
            "agent_type": task.agent_type or "implementation_agent",
            "phase_id": task.phase_id or "",
        }
        try:
            return self.command_template.format(
                **{key: shlex.quote(value) for key, value in fields.items()}
            )
        except (KeyError, IndexError, ValueError) as exc:
            raise BackendProcessError(
                f"Invalid command template {self.command_template!r}: {exc}",
                backend=self.name,
                retriable=False,
            ) from exc

    async def execute(self, task: Task) -> ExecutionResult:
        command = self.build_command(task)
        cwd = str(self.working_directory) if self.working_directory else None
        self._emit({"event": "command_start", "task_id": task.id, "command": command[:200]})
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendProcessError(
                f"Could not start command for task {task.id}: {exc}",
                backend=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        exit_code = process.returncode
        self._emit({"event": "command_exit", "task_id": task.id, "exit_code": exit_code})
        if exit_code == _COMMAND_NOT_FOUND:
            raise BackendProcessError(
                f"Command not found for task {task.id}: {stderr_text[-400:]}",
                backend=self.name,
                exit_code=exit_code,
                retriable=False,
            )
        output = {
            "backend": self.name,
            "command": command,
            "exit_code": exit_code,
            "stdout_tail": stdout_text[-1000:],
            "stderr_tail": stderr_text[-1000:],
        }
        if exit_code != 0:
            logger.debug("Command for task %s exited with %s", task.id, exit_code)
            return ExecutionResult(
                success=False,
                output=output,
                error=f"Command exited with code {exit_code}: {stderr_text[-400:]}".strip(),
            )
        return ExecutionResult(success=True, output=output)
