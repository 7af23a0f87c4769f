from __future__ import annotations

from agentic_toolkit.backends.base import ExecutionBackend, ExecutionResult
from agentic_toolkit.state.task_store import Task

_AGENT_SUMMARIES = {
    "planning_agent": ["Analyzed requirements", "Created specifications"],
    "implementation_agent": ["Core functionality implemented", "Error handling added"],
    "testing_agent": ["Test suite executed"],
    "deployment_agent": ["Services deployed", "Health checks configured"],
}


class EchoBackend(ExecutionBackend):
    """Deterministic local backend that reports success for every task."""

    name = "echo"

    async def execute(self, task: Task) -> ExecutionResult:
        agent_type = task.agent_type or "implementation_agent"
        return ExecutionResult(
            success=True,
            output={
                "backend": self.name,
                "agent_type": agent_type,
                "task_id": task.id,
                "summary": list(_AGENT_SUMMARIES.get(agent_type, ["Task executed"])),
                "files": task.output_files,
            },
        )
