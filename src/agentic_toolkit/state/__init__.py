from agentic_toolkit.state.execution_log import ExecutionLog, ExecutionLogEntry
from agentic_toolkit.state.lease import (
    LeaseError,
    LeaseLostError,
    LoopAlreadyRunningError,
    RunLease,
)
from agentic_toolkit.state.task_store import (
    DuplicateTaskError,
    InvalidTransitionError,
    StoreError,
    StoreLoadError,
    StoreWriteError,
    Task,
    TaskNotFoundError,
    TaskStore,
)

__all__ = [
    "DuplicateTaskError",
    "ExecutionLog",
    "ExecutionLogEntry",
    "InvalidTransitionError",
    "LeaseError",
    "LeaseLostError",
    "LoopAlreadyRunningError",
    "RunLease",
    "StoreError",
    "StoreLoadError",
    "StoreWriteError",
    "Task",
    "TaskNotFoundError",
    "TaskStore",
]
