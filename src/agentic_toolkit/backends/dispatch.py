from __future__ import annotations

from agentic_toolkit.backends.base import ExecutionBackend, ExecutionResult
from agentic_toolkit.state.task_store import Task

DEFAULT_AGENT_TYPE = "implementation_agent"


class AgentDispatchBackend(ExecutionBackend):
    """Routes each task to the handler registered for its ``agent_type``."""

    name = "dispatch"

    def __init__(
        self,
        default: ExecutionBackend,
        handlers: dict[str, ExecutionBackend] | None = None,
    ) -> None:
        self.default = default
        self.handlers = dict(handlers or {})

    def register(self, agent_type: str, backend: ExecutionBackend) -> None:
        self.handlers[agent_type] = backend

    def resolve(self, task: Task) -> ExecutionBackend:
        return self.handlers.get(task.agent_type or DEFAULT_AGENT_TYPE, self.default)

    async def execute(self, task: Task) -> ExecutionResult:
        return await self.resolve(task).execute(task)
