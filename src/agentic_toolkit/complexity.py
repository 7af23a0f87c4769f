from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from agentic_toolkit.state.task_store import Task

WEIGHTS = {
    "dependencies": 0.3,
    "description_length": 0.2,
    "priority": 0.25,
    "technical_difficulty": 0.25,
}
PRIORITY_FACTORS = {"critical": 1.0, "high": 0.75, "medium": 0.5, "low": 0.25}
HIGH_DIFFICULTY_KEYWORDS = (
    "authentication",
    "security",
    "encryption",
    "real-time",
    "websocket",
    "api",
    "database",
    "optimization",
)
MEDIUM_DIFFICULTY_KEYWORDS = (
    "frontend",
    "backend",
    "testing",
    "deployment",
    "integration",
    "ui",
    "ux",
)
MIN_SCORE = 1.0
MAX_SCORE = 5.0
COMPLEX_TASK_THRESHOLD = 4.0


@dataclass(slots=True)
class TaskComplexity:
    task_id: str
    title: str
    score: float
    factors: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "score": round(self.score, 2),
            "factors": {key: round(value, 3) for key, value in self.factors.items()},
        }


@dataclass(slots=True)
class ComplexityReport:
    score: float
    level: str
    total_tasks: int = 0
    average_complexity: float = 0.0
    high_priority_tasks: int = 0
    complex_tasks: list[TaskComplexity] = field(default_factory=list)
    per_task: list[TaskComplexity] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "total_tasks": self.total_tasks,
            "average_complexity": round(self.average_complexity, 3),
            "high_priority_tasks": self.high_priority_tasks,
            "complex_tasks": [item.to_dict() for item in self.complex_tasks],
            "per_task": [item.to_dict() for item in self.per_task],
            "recommendations": list(self.recommendations),
        }


def technical_difficulty(task: Task) -> float:
    """Keyword estimate starting at 1.0, capped at 3.0."""
    text = f"{task.title} {task.description}".lower()
    difficulty = 1.0
    difficulty += 0.8 * sum(1 for keyword in HIGH_DIFFICULTY_KEYWORDS if keyword in text)
    difficulty += 0.4 * sum(1 for keyword in MEDIUM_DIFFICULTY_KEYWORDS if keyword in text)
    return min(difficulty, 3.0)


def task_factors(task: Task, dependency_count: int | None = None) -> dict[str, float]:
    deps = len(task.dependencies) if dependency_count is None else dependency_count
    return {
        "dependencies": min(max(deps, 0) / 4, 1.0),
        "description_length": min(len(task.description) / 200, 1.0),
        "priority": PRIORITY_FACTORS.get(task.priority, PRIORITY_FACTORS["low"]),
        "technical_difficulty": (technical_difficulty(task) - 1.0) / 2.0,
    }


def score_task(task: Task, dependency_count: int | None = None) -> float:
    factors = task_factors(task, dependency_count)
    weighted = sum(factors[name] * weight for name, weight in WEIGHTS.items())
    return min(max(MIN_SCORE + (MAX_SCORE - MIN_SCORE) * weighted, MIN_SCORE), MAX_SCORE)


def complexity_level(score: float) -> str:
    if score >= 4:
        return "very-high"
    if score >= 3:
        return "high"
    if score >= 2:
        return "medium"
    if score >= 1.5:
        return "low"
    return "very-low"


def _recommendations(
    average: float,
    high_priority: int,
    total: int,
    complex_count: int,
    tasks: Sequence[Task],
) -> list[str]:
    recommendations: list[str] = []
    if average > 3.5:
        recommendations.append("Break down complex tasks into smaller subtasks")
    if high_priority > total * 0.6:
        recommendations.append("Rebalance task priorities to avoid bottlenecks")
    if complex_count:
        recommendations.append(f"Focus on {complex_count} high-complexity tasks first")
    if any(len(task.dependencies) > 2 for task in tasks):
        recommendations.append("Simplify dependency chains for better parallel execution")
    if not recommendations:
        recommendations.append("Project complexity is well-balanced")
    return recommendations


def analyze(tasks: Sequence[Task]) -> ComplexityReport:
    if not tasks:
        return ComplexityReport(score=0.0, level="none", recommendations=["No tasks to analyze"])

    per_task = [
        TaskComplexity(
            task_id=task.id,
            title=task.title,
            score=score_task(task),
            factors=task_factors(task),
        )
        for task in tasks
    ]
    average = sum(item.score for item in per_task) / len(per_task)
    high_priority = sum(1 for task in tasks if task.priority in {"critical", "high"})
    complex_tasks = [item for item in per_task if item.score > COMPLEX_TASK_THRESHOLD]
    return ComplexityReport(
        score=round(average, 1),
        level=complexity_level(average),
        total_tasks=len(tasks),
        average_complexity=average,
        high_priority_tasks=high_priority,
        complex_tasks=complex_tasks,
        per_task=per_task,
        recommendations=_recommendations(
            average, high_priority, len(tasks), len(complex_tasks), tasks
        ),
    )
