from pathlib import Path

from agentic_toolkit.resolver import (
    blocked_tasks,
    dependency_report,
    find_cycles,
    is_satisfied,
    longest_chain,
    missing_dependencies,
    next_task,
    parallel_batch,
)
from agentic_toolkit.state import Task, TaskStore


def _store(tmp_path: Path, *tasks: Task) -> TaskStore:
    store = TaskStore(tmp_path / "tasks.json")
    for task in tasks:
        store.add(task, persist=False)
    store.save()
    return store


def test_next_task_is_first_fit_in_store_order(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="low first", priority="low"),
        Task(id="B", title="critical second", priority="critical"),
    )

    assert next_task(store).id == "A"


def test_next_task_skips_unsatisfied_and_non_pending(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="root", status="completed"),
        Task(id="B", title="waits", dependencies=["C"]),
        Task(id="C", title="runnable", dependencies=["A"]),
    )

    assert next_task(store).id == "C"
    store.update_task_status("C", "in_progress")
    assert next_task(store) is None


def test_cycle_blocks_both_members(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a", dependencies=["B"]),
        Task(id="B", title="b", dependencies=["A"]),
    )

    assert next_task(store) is None
    assert find_cycles(store) == {"A", "B"}
    reasons = {item.task_id: item.reason for item in blocked_tasks(store)}
    assert reasons == {"A": "cycle", "B": "cycle"}


def test_self_dependency_is_a_cycle(tmp_path: Path) -> None:
    store = _store(tmp_path, Task(id="A", title="a", dependencies=["A"]))

    assert find_cycles(store) == {"A"}
    assert next_task(store) is None


def test_diamond_is_not_a_cycle(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c", dependencies=["A"]),
        Task(id="D", title="d", dependencies=["B", "C"]),
    )

    assert find_cycles(store) == set()
    assert longest_chain(store) == 3


def test_missing_dependency_stays_unsatisfied_across_reloads(tmp_path: Path) -> None:
    store = _store(tmp_path, Task(id="A", title="a", dependencies=["ghost"]))

    for _ in range(3):
        store.load()
        task = store.require("A")
        assert not is_satisfied(task, store)
        assert next_task(store) is None

    assert missing_dependencies(store) == {"A": ["ghost"]}
    (blocked,) = blocked_tasks(store)
    assert blocked.reason == "missing_dependency"
    assert "ghost" in blocked.describe()


def test_task_downstream_of_cycle_reports_cycle(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a", dependencies=["B"]),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c", dependencies=["B"]),
    )

    blocked = {item.task_id: item for item in blocked_tasks(store)}
    assert blocked["C"].reason == "cycle"
    assert blocked["C"].waiting_on == ["A", "B"]


def test_waiting_tasks_name_their_open_dependencies(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b", dependencies=["A"]),
    )

    (blocked,) = blocked_tasks(store)
    assert blocked.task_id == "B"
    assert blocked.reason == "waiting"
    assert blocked.waiting_on == ["A"]


def test_parallel_batch_excludes_dependent_pairs(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b"),
        Task(id="C", title="c"),
        Task(id="D", title="d"),
    )

    assert [task.id for task in parallel_batch(store, max_batch=3)] == ["A", "B", "C"]
    assert [task.id for task in parallel_batch(store, 3, exclude={"A", "B"})] == ["C", "D"]
    assert parallel_batch(store, 0) == []


def test_parallel_batch_only_takes_runnable_tasks(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c"),
    )

    assert [task.id for task in parallel_batch(store)] == ["A", "C"]


def test_longest_chain_and_report(tmp_path: Path) -> None:
    assert longest_chain(TaskStore(tmp_path / "empty.json")) == 0

    store = _store(
        tmp_path,
        Task(id="A", title="a"),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c", dependencies=["B", "missing"]),
        Task(id="D", title="d"),
    )

    report = dependency_report(store)
    assert report["longest_chain"] == 3
    assert report["total_dependencies"] == 3
    assert report["cycles"] == []
    assert report["parallel_tasks"] == ["C", "D"]
    assert report["missing_dependencies"] == {"C": ["missing"]}


def test_longest_chain_terminates_with_cycles(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        Task(id="A", title="a", dependencies=["C"]),
        Task(id="B", title="b", dependencies=["A"]),
        Task(id="C", title="c", dependencies=["B"]),
    )

    assert longest_chain(store) == 3


def test_longest_chain_handles_deep_chains(tmp_path: Path) -> None:
    # Newest first, so the walk from the first task descends the whole chain.
    tasks = [
        Task(id=f"T{i}", title=f"t{i}", dependencies=[f"T{i - 1}"] if i else [])
        for i in reversed(range(1500))
    ]
    store = _store(tmp_path, *tasks)

    assert longest_chain(store) == 1500
    assert dependency_report(store)["longest_chain"] == 1500
