import pytest

from agentic_toolkit.complexity import (
    analyze,
    complexity_level,
    score_task,
    task_factors,
    technical_difficulty,
)
from agentic_toolkit.state import Task


def _simplest() -> Task:
    return Task(id="s", title="Rename file", priority="low")


def _hardest() -> Task:
    return Task(
        id="h",
        title="Real-time API security",
        description=(
            "Build authentication, encryption and database optimization over a websocket "
            "channel for the backend and frontend integration. "
        )
        * 3,
        priority="critical",
        dependencies=["a", "b", "c", "d", "e"],
    )


def test_scores_span_the_full_scale() -> None:
    low = score_task(_simplest())
    high = score_task(_hardest())

    assert 1.0 <= low <= 1.6
    assert 4.9 <= high <= 5.0


def test_every_factor_is_normalized() -> None:
    factors = task_factors(_hardest())

    assert set(factors) == {
        "dependencies",
        "description_length",
        "priority",
        "technical_difficulty",
    }
    assert all(0.0 <= value <= 1.0 for value in factors.values())
    assert factors["dependencies"] == 1.0
    assert factors["technical_difficulty"] == 1.0


def test_technical_difficulty_counts_keywords_and_caps() -> None:
    assert technical_difficulty(Task(id="1", title="Write docs")) == 1.0
    assert technical_difficulty(Task(id="2", title="Database access")) == pytest.approx(1.8)
    assert technical_difficulty(Task(id="3", title="Frontend tweaks")) == pytest.approx(1.4)
    assert technical_difficulty(_hardest()) == 3.0


def test_dependency_count_override() -> None:
    task = Task(id="x", title="x", priority="medium")

    assert score_task(task, dependency_count=4) > score_task(task)


@pytest.mark.parametrize(
    ("score", "level"),
    [(4.2, "very-high"), (3.0, "high"), (2.5, "medium"), (1.7, "low"), (1.2, "very-low")],
)
def test_complexity_levels(score: float, level: str) -> None:
    assert complexity_level(score) == level


def test_analyze_empty_list() -> None:
    report = analyze([])

    assert report.score == 0.0
    assert report.level == "none"
    assert report.recommendations == ["No tasks to analyze"]


def test_analyze_reports_complex_tasks_and_recommendations() -> None:
    tasks = [_hardest(), _hardest(), _simplest()]

    report = analyze(tasks)

    assert report.total_tasks == 3
    assert report.high_priority_tasks == 2
    assert [item.task_id for item in report.complex_tasks] == ["h", "h"]
    assert "Rebalance task priorities to avoid bottlenecks" in report.recommendations
    assert "Focus on 2 high-complexity tasks first" in report.recommendations
    assert "Simplify dependency chains for better parallel execution" in report.recommendations
    assert report.score == round(report.average_complexity, 1)
    assert report.to_dict()["per_task"][2]["task_id"] == "s"


def test_balanced_project_recommendation() -> None:
    report = analyze([Task(id="1", title="Write docs"), Task(id="2", title="Fix typo")])

    assert report.recommendations == ["Project complexity is well-balanced"]
    assert report.level == "low"
