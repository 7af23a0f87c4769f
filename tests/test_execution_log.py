import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agentic_toolkit.state import ExecutionLog, ExecutionLogEntry


def test_append_persists_entries(tmp_path: Path) -> None:
    path = tmp_path / "execution-log.json"
    log = ExecutionLog(path)

    log.append("start", "Alpha", {"task_id": "A"})
    log.append("complete", "Alpha", {"task_id": "A", "duration_ms": 12})

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert [item["type"] for item in raw] == ["start", "complete"]
    assert raw[1]["metadata"]["duration_ms"] == 12
    assert [entry.type for entry in ExecutionLog(path).entries()] == ["start", "complete"]


def test_capacity_evicts_oldest(tmp_path: Path) -> None:
    path = tmp_path / "execution-log.json"
    log = ExecutionLog(path, capacity=3)

    for index in range(5):
        log.append("start", f"task {index}", {"task_id": str(index)})

    messages = [entry.message for entry in log.entries()]
    assert messages == ["task 2", "task 3", "task 4"]
    assert len(log.history) == 3


def test_capacity_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ExecutionLog(tmp_path / "log.json", capacity=0)


def test_corrupt_log_is_replaced_on_append(tmp_path: Path) -> None:
    path = tmp_path / "execution-log.json"
    path.write_text("[{broken", encoding="utf-8")
    log = ExecutionLog(path)

    log.append("error", "Iteration 1 failed", {"error": "boom"})

    (entry,) = log.entries()
    assert entry.type == "error"


def test_entries_filter_by_type_and_time(tmp_path: Path) -> None:
    path = tmp_path / "execution-log.json"
    old = ExecutionLogEntry(
        type="fail",
        message="old",
        timestamp=(datetime.now(UTC) - timedelta(days=2)).isoformat(),
    )
    path.write_text(json.dumps([old.to_dict(), {"type": "bogus"}]), encoding="utf-8")
    log = ExecutionLog(path)
    log.append("fail", "new", {"task_id": "B"})

    assert [entry.message for entry in log.entries(entry_type="fail")] == ["old", "new"]
    recent = log.entries(since=datetime.now(UTC) - timedelta(hours=1))
    assert [entry.message for entry in recent] == ["new"]
    assert [entry.message for entry in log.entries(persisted=False)] == ["new"]


def test_stats_and_recommendations() -> None:
    entries = [
        ExecutionLogEntry(type="complete", message="a", metadata={"duration_ms": 100}),
        ExecutionLogEntry(type="fail", message="b"),
        ExecutionLogEntry(type="error", message="c"),
        ExecutionLogEntry(type="start", message="d"),
    ]

    stats = ExecutionLog.stats(entries)

    assert stats["total"] == 4
    assert stats["successful"] == 1
    assert stats["failed"] == 2
    assert stats["average_duration_ms"] == 100.0
    assert stats["success_rate"] == pytest.approx(100 / 3)
    recommendations = ExecutionLog.recommendations(stats)
    assert "Review and fix failing tasks to improve success rate" in recommendations
    assert "Investigate root causes of task failures" in recommendations


def test_report_shape(tmp_path: Path) -> None:
    log = ExecutionLog(tmp_path / "execution-log.json")
    log.append("complete", "Alpha", {"task_id": "A", "duration_ms": 5})

    report = log.report()

    assert report["summary"]["successful"] == 1
    assert report["summary"]["success_rate"] == 100.0
    assert len(report["recent_activity"]) == 1
    assert report["recommendations"] == []
