"""Read-only dependency analysis over a task store.

Selection is first-fit in store order: ``next_task`` returns the first
pending task whose dependencies are all completed, regardless of priority.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from agentic_toolkit.state.task_store import Task, TaskStore

BlockReason = Literal["missing_dependency", "cycle", "waiting"]


@dataclass(slots=True)
class BlockedTask:
    task_id: str
    reason: BlockReason
    waiting_on: list[str] = field(default_factory=list)

    def describe(self) -> str:
        deps = ", ".join(self.waiting_on)
        if self.reason == "missing_dependency":
            return f"{self.task_id}: depends on unknown task(s) {deps}"
        if self.reason == "cycle":
            return f"{self.task_id}: dependency cycle through {deps}"
        return f"{self.task_id}: waiting on {deps}"

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "reason": self.reason, "waiting_on": list(self.waiting_on)}


def _graph(store: TaskStore) -> dict[str, list[str]]:
    # Edges to unknown ids are dropped here; missing_dependencies reports them.
    return {
        task.id: [dep for dep in task.dependencies if dep in store]
        for task in store
    }


def is_satisfied(task: Task, store: TaskStore) -> bool:
    for dep_id in task.dependencies:
        dep = store.get(dep_id)
        if dep is None or dep.status != "completed":
            return False
    return True


def next_task(store: TaskStore) -> Task | None:
    for task in store:
        if task.status == "pending" and is_satisfied(task, store):
            return task
    return None


def _ancestors(task_id: str, graph: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    stack = list(graph.get(task_id, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(graph.get(current, []))
    return seen


def parallel_batch(
    store: TaskStore,
    max_batch: int = 3,
    *,
    exclude: Iterable[str] = (),
) -> list[Task]:
    """Up to ``max_batch`` runnable tasks, none a transitive dependency of another.

    Ids in ``exclude`` (claimed by an earlier batch in the same scan) are
    never returned.
    """
    if max_batch < 1:
        return []
    claimed = set(exclude)
    graph = _graph(store)
    batch: list[Task] = []
    batch_ancestors: set[str] = set()
    for task in store:
        if len(batch) >= max_batch:
            break
        if task.id in claimed or task.status != "pending" or not is_satisfied(task, store):
            continue
        ancestors = _ancestors(task.id, graph)
        if task.id in batch_ancestors or ancestors & {item.id for item in batch}:
            continue
        batch.append(task)
        claimed.add(task.id)
        batch_ancestors |= ancestors
    return batch


def find_cycles(store: TaskStore) -> set[str]:
    """Ids of tasks that sit on a dependency cycle, self-dependencies included.

    Depth-first with an explicit path: reaching a node that is on the current
    path closes a cycle, while reaching a node that was fully explored from an
    earlier start does not.
    """
    graph = _graph(store)
    done: set[str] = set()
    members: set[str] = set()
    for start in graph:
        if start in done:
            continue
        path: list[str] = [start]
        on_path: set[str] = {start}
        iterators = [iter(graph[start])]
        while iterators:
            try:
                dep = next(iterators[-1])
            except StopIteration:
                iterators.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue
            if dep in on_path:
                members.update(path[path.index(dep) :])
                continue
            if dep in done:
                continue
            path.append(dep)
            on_path.add(dep)
            iterators.append(iter(graph[dep]))
    return members


def longest_chain(store: TaskStore) -> int:
    """Number of tasks on the longest dependency path (edges + 1); 0 when empty."""
    graph = _graph(store)
    cyclic = find_cycles(store)
    memo: dict[str, int] = {}
    longest = 0

    for root in graph:
        if root in memo:
            longest = max(longest, memo[root])
            continue
        # Explicit stack of (task_id, dependency iterator, best child depth).
        on_path = {root}
        stack: list[tuple[str, Any, int]] = [(root, iter(graph[root]), 0)]
        result = 0
        while stack:
            task_id, deps, best = stack[-1]
            child = next(deps, None)
            if child is not None:
                if child in on_path:
                    continue
                if child in memo:
                    stack[-1] = (task_id, deps, max(best, memo[child]))
                    continue
                on_path.add(child)
                stack.append((child, iter(graph[child]), 0))
                continue
            stack.pop()
            on_path.discard(task_id)
            value = best + 1
            # Depth of an acyclic node cannot depend on the path that reached it.
            if task_id not in cyclic:
                memo[task_id] = value
            if stack:
                parent, parent_deps, parent_best = stack[-1]
                stack[-1] = (parent, parent_deps, max(parent_best, value))
            else:
                result = value
        longest = max(longest, result)
    return longest


def missing_dependencies(store: TaskStore) -> dict[str, list[str]]:
    missing: dict[str, list[str]] = {}
    for task in store:
        unknown = [dep for dep in task.dependencies if dep not in store]
        if unknown:
            missing[task.id] = unknown
    return missing


def blocked_tasks(store: TaskStore) -> list[BlockedTask]:
    """Pending tasks that are not runnable, with the reason for each."""
    missing = missing_dependencies(store)
    cyclic = find_cycles(store)
    graph = _graph(store)
    blocked: list[BlockedTask] = []
    for task in store:
        if task.status != "pending" or is_satisfied(task, store):
            continue
        if task.id in missing:
            blocked.append(BlockedTask(task.id, "missing_dependency", missing[task.id]))
            continue
        upstream_cycle = sorted((_ancestors(task.id, graph) | {task.id}) & cyclic)
        if upstream_cycle:
            blocked.append(BlockedTask(task.id, "cycle", upstream_cycle))
            continue
        waiting = [
            dep
            for dep in task.dependencies
            if (dep_task := store.get(dep)) is not None and dep_task.status != "completed"
        ]
        blocked.append(BlockedTask(task.id, "waiting", waiting))
    return blocked


def dependency_report(store: TaskStore) -> dict[str, Any]:
    graph = _graph(store)
    depended_on = {dep for deps in graph.values() for dep in deps}
    return {
        "total_dependencies": sum(len(task.dependencies) for task in store),
        "cycles": sorted(find_cycles(store)),
        "longest_chain": longest_chain(store),
        "parallel_tasks": [task_id for task_id in graph if task_id not in depended_on],
        "missing_dependencies": missing_dependencies(store),
    }
