from agentic_toolkit.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ExecutionBackend,
    ExecutionResult,
)
from agentic_toolkit.backends.command import CommandBackend
from agentic_toolkit.backends.dispatch import AgentDispatchBackend
from agentic_toolkit.backends.echo import EchoBackend
from agentic_toolkit.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentDispatchBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandBackend",
    "EchoBackend",
    "ExecutionBackend",
    "ExecutionResult",
    "ResilientBackend",
    "RetryPolicy",
]
