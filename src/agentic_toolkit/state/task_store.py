from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TASK_STATUSES = ("pending", "in_progress", "completed")
TASK_PRIORITIES = ("critical", "high", "medium", "low")

# completed is terminal; in_progress -> pending is the failure/stop recovery edge.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending", "in_progress"}),
    "in_progress": frozenset({"in_progress", "completed", "pending"}),
    "completed": frozenset({"completed"}),
}

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "agent_type": ("agent_type", "agentType"),
    "estimated_hours": ("estimated_hours", "estimatedEffort", "estimated_effort"),
    "last_updated": ("lastUpdated", "last_updated"),
    "phase_id": ("phaseId", "phase_id"),
    "execution_context": ("execution_context", "executionContext"),
}
_KNOWN_KEYS = {
    "id",
    "title",
    "description",
    "status",
    "priority",
    "dependencies",
    "category",
    "phase",
    *(alias for aliases in _FIELD_ALIASES.values() for alias in aliases),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class StoreError(RuntimeError):
    """Raised when task state cannot be read, written or changed."""


class StoreLoadError(StoreError):
    """Raised when the persisted task document is unreadable or corrupt."""


class StoreWriteError(StoreError):
    """Raised when the task document cannot be flushed to disk."""


class TaskNotFoundError(StoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(StoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task id already exists: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(StoreError):
    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Task {task_id} cannot move from '{current}' to '{requested}'."
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    dependencies: list[str] = field(default_factory=list)
    agent_type: str | None = None
    category: str | None = None
    estimated_hours: float | None = None
    last_updated: str | None = None
    phase: str | None = None
    phase_id: str | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def output_files(self) -> list[str]:
        files = self.execution_context.get("output_files")
        if not isinstance(files, list):
            return []
        return [str(item) for item in files if str(item).strip()]

    @staticmethod
    def _pick(payload: dict[str, Any], name: str) -> Any:
        for alias in _FIELD_ALIASES[name]:
            if alias in payload:
                return payload[alias]
        return None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        if "id" not in payload or payload["id"] is None or str(payload["id"]).strip() == "":
            raise ValueError("Task record is missing an id.")
        raw_deps = payload.get("dependencies") or []
        if not isinstance(raw_deps, list):
            raw_deps = [raw_deps]
        dependencies: list[str] = []
        for dep in raw_deps:
            dep_id = str(dep).strip()
            if dep_id and dep_id not in dependencies:
                dependencies.append(dep_id)

        status = str(payload.get("status") or "pending")
        if status not in TASK_STATUSES:
            raise ValueError(f"Task {payload['id']} has unknown status '{status}'.")

        estimated = cls._pick(payload, "estimated_hours")
        context = cls._pick(payload, "execution_context")
        phase_id = cls._pick(payload, "phase_id")
        agent_type = cls._pick(payload, "agent_type")
        return cls(
            id=str(payload["id"]).strip(),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            status=status,
            priority=str(payload.get("priority") or "medium").lower(),
            dependencies=dependencies,
            agent_type=str(agent_type) if agent_type else None,
            category=str(payload["category"]) if payload.get("category") else None,
            estimated_hours=float(estimated) if isinstance(estimated, (int, float)) else None,
            last_updated=cls._pick(payload, "last_updated"),
            phase=str(payload["phase"]) if payload.get("phase") is not None else None,
            phase_id=str(phase_id) if phase_id is not None else None,
            execution_context=dict(context) if isinstance(context, dict) else {},
            extra={key: value for key, value in payload.items() if key not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
        }
        if self.agent_type is not None:
            payload["agent_type"] = self.agent_type
        if self.category is not None:
            payload["category"] = self.category
        if self.estimated_hours is not None:
            payload["estimated_hours"] = self.estimated_hours
        if self.last_updated is not None:
            payload["lastUpdated"] = self.last_updated
        if self.phase is not None:
            payload["phase"] = self.phase
        if self.phase_id is not None:
            payload["phaseId"] = self.phase_id
        if self.execution_context:
            payload["execution_context"] = dict(self.execution_context)
        payload.update(self.extra)
        return payload


class TaskStore:
    """Ordered collection of tasks backed by a JSON document.

    Every mutation rewrites the whole document, so a reader of the file never
    sees a status that the store has not flushed. Insertion order is preserved
    and is the order used for first-fit selection.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._tasks: dict[str, Task] = {}
        self._write_lock = threading.Lock()
        self.last_load_error: StoreLoadError | None = None
        self.load_issues: list[str] = []

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks.values()))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @staticmethod
    def _flatten_phases(phases: list[Any]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for phase in phases:
            if not isinstance(phase, dict):
                continue
            for task in phase.get("tasks") or []:
                if not isinstance(task, dict):
                    continue
                record = dict(task)
                record["phase"] = phase.get("name")
                record["phaseId"] = phase.get("id")
                records.append(record)
        return records

    def _read_records(self) -> list[dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreLoadError(f"Could not read {self.path}: {exc}") from exc
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreLoadError(f"Task document {self.path} is not valid JSON: {exc}") from exc
        return self._records(document)

    def _records(self, document: Any) -> list[dict[str, Any]]:
        if not isinstance(document, dict):
            raise StoreLoadError(f"Task document {self.path} must be a JSON object.")
        if isinstance(document.get("phases"), list):
            return self._flatten_phases(document["phases"])
        tasks = document.get("tasks", [])
        if not isinstance(tasks, list):
            raise StoreLoadError(f"Task document {self.path} has a non-list 'tasks' entry.")
        return [item for item in tasks if isinstance(item, dict)]

    def load(self, *, strict: bool = False) -> list[Task]:
        """Replace in-memory state with the persisted document.

        A missing document yields an empty store. A corrupt one yields an empty
        store and ``last_load_error`` unless ``strict`` is set, in which case
        ``StoreLoadError`` propagates and the in-memory state is left untouched.
        """
        self.last_load_error = None
        self.load_issues = []
        if not self.path.exists():
            self._tasks = {}
            return []
        try:
            records = self._read_records()
        except StoreLoadError as exc:
            if strict:
                raise
            logger.warning("Treating task store as empty: %s", exc)
            self.last_load_error = exc
            self._tasks = {}
            return []

        tasks: dict[str, Task] = {}
        for index, record in enumerate(records):
            try:
                task = Task.from_dict(record)
            except (TypeError, ValueError) as exc:
                issue = f"record #{index} skipped: {exc}"
                if strict:
                    raise StoreLoadError(f"Task document {self.path}: {issue}") from exc
                self.load_issues.append(issue)
                continue
            if task.id in tasks:
                self.load_issues.append(f"duplicate task id '{task.id}' ignored")
                continue
            tasks[task.id] = task
        for issue in self.load_issues:
            logger.warning("Task store %s: %s", self.path, issue)
        self._tasks = tasks
        return self.tasks

    def to_document(self) -> dict[str, Any]:
        tasks = self.tasks
        return {
            "metadata": {
                "lastUpdated": _utcnow_iso(),
                "totalTasks": len(tasks),
                "completedTasks": sum(1 for task in tasks if task.status == "completed"),
            },
            "tasks": [task.to_dict() for task in tasks],
        }

    def replace_document(self, document: dict[str, Any]) -> list[Task]:
        """Swap the whole task list for ``document`` and flush it.

        Validation is strict: a bad record or a duplicate id raises
        ``StoreLoadError`` before anything is written.
        """
        tasks: dict[str, Task] = {}
        for index, record in enumerate(self._records(document)):
            try:
                task = Task.from_dict(record)
            except (TypeError, ValueError) as exc:
                raise StoreLoadError(f"record #{index} rejected: {exc}") from exc
            if task.id in tasks:
                raise StoreLoadError(f"duplicate task id '{task.id}'")
            task.last_updated = task.last_updated or _utcnow_iso()
            tasks[task.id] = task
        self._tasks = tasks
        self.save()
        return self.tasks

    def save(self) -> None:
        serialized = json.dumps(self.to_document(), ensure_ascii=False, indent=2) + "\n"
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self.path.name}-", suffix=".tmp", dir=self.path.parent
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.write(serialized)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        pass
                    raise
            except OSError as exc:
                raise StoreWriteError(f"Could not write {self.path}: {exc}") from exc

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def add(self, task: Task, *, persist: bool = True) -> Task:
        if task.id in self._tasks:
            raise DuplicateTaskError(task.id)
        if task.status not in TASK_STATUSES:
            raise StoreError(f"Task {task.id} has unknown status '{task.status}'.")
        task.last_updated = task.last_updated or _utcnow_iso()
        self._tasks[task.id] = task
        if persist:
            self.save()
        return task

    def update_task_status(self, task_id: str, status: str, *, force: bool = False) -> Task:
        """Move a task to ``status``, stamp ``last_updated`` and flush the document.

        Setting the current status again is accepted and still persists.
        ``force`` skips the transition check and is meant for operator fixes.
        """
        if status not in TASK_STATUSES:
            raise StoreError(
                f"Unknown status '{status}'. Expected one of: {', '.join(TASK_STATUSES)}"
            )
        task = self.require(task_id)
        if not force and status not in ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransitionError(task_id, task.status, status)
        task.status = status
        task.last_updated = _utcnow_iso()
        self.save()
        return task

    def list_tasks(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        phase: str | None = None,
        agent_type: str | None = None,
    ) -> list[Task]:
        tasks = self.tasks
        if status:
            tasks = [task for task in tasks if task.status == status]
        if priority:
            tasks = [task for task in tasks if task.priority == priority]
        if phase:
            tasks = [task for task in tasks if phase in {task.phase_id, task.phase}]
        if agent_type:
            tasks = [task for task in tasks if task.agent_type == agent_type]
        return tasks

    def stats(self) -> dict[str, Any]:
        tasks = self.tasks
        total = len(tasks)
        completed = sum(1 for task in tasks if task.status == "completed")
        return {
            "total": total,
            "completed": completed,
            "in_progress": sum(1 for task in tasks if task.status == "in_progress"),
            "pending": sum(1 for task in tasks if task.status == "pending"),
            "completion_rate": round(completed / total * 100, 1) if total else 0.0,
        }
