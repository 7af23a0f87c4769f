from __future__ import annotations

import re
from typing import Any

HEADING_PATTERN = re.compile(r"^(#{1,3})\s+(.+?)\s*#*$")
ITEM_PATTERN = re.compile(r"^(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.+)$")
HOURS_PATTERN = re.compile(r"\((\d+(?:\.\d+)?)\s*h(?:ours?)?\)", re.IGNORECASE)
DEPENDS_PATTERN = re.compile(r"\[(?:depends|after)\s*:\s*([^\]]+)\]", re.IGNORECASE)

PRIORITY_KEYWORDS = (
    ("critical", ("critical", "urgent", "blocker", "security")),
    ("high", ("important", "core", "must", "high priority")),
    ("low", ("optional", "nice to have", "later", "polish", "low priority")),
)
AGENT_KEYWORDS = (
    ("testing_agent", ("test", "qa", "verify", "coverage")),
    ("deployment_agent", ("deploy", "release", "ci/cd", "infrastructure", "provision")),
    ("planning_agent", ("plan", "design", "research", "analy", "requirement", "spec")),
)
CATEGORY_BY_AGENT = {
    "testing_agent": "testing",
    "deployment_agent": "deployment",
    "planning_agent": "planning",
    "implementation_agent": "implementation",
}


def infer_priority(text: str) -> str:
    lower = text.lower()
    for priority, keywords in PRIORITY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return priority
    return "medium"


def infer_agent_type(text: str) -> str:
    lower = text.lower()
    for agent_type, keywords in AGENT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return agent_type
    return "implementation_agent"


def _parse_item(text: str, task_id: str) -> dict[str, Any]:
    dependencies: list[str] = []
    for match in DEPENDS_PATTERN.finditer(text):
        dependencies.extend(part.strip() for part in match.group(1).split(",") if part.strip())
    hours_match = HOURS_PATTERN.search(text)
    title = DEPENDS_PATTERN.sub("", HOURS_PATTERN.sub("", text)).strip(" -:")
    title, _, description = title.partition(" - ")
    agent_type = infer_agent_type(text)
    task: dict[str, Any] = {
        "id": task_id,
        "title": title.strip(),
        "description": description.strip(),
        "status": "pending",
        "priority": infer_priority(text),
        "dependencies": dependencies,
        "agent_type": agent_type,
        "category": CATEGORY_BY_AGENT[agent_type],
    }
    if hours_match:
        task["estimated_hours"] = float(hours_match.group(1))
    return task


def parse_plan(content: str) -> dict[str, Any]:
    """Turn a markdown plan into a ``phases[].tasks[]`` task document.

    Headings open phases; list items become tasks numbered ``<phase>.<n>``.
    Items before any heading land in a phase named "General". Dependencies
    come only from explicit ``[depends: 1.1, 1.2]`` markers.
    """
    lines = [raw_line.strip() for raw_line in content.splitlines()]
    has_subheadings = any(line.startswith("## ") for line in lines)
    phases: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for line in lines:
        if not line:
            continue
        heading = HEADING_PATTERN.match(line)
        if heading:
            # With "##" phases present, a leading "#" heading is the document title.
            if heading.group(1) == "#" and has_subheadings and not phases:
                continue
            current = {"id": str(len(phases) + 1), "name": heading.group(2).strip(), "tasks": []}
            phases.append(current)
            continue
        item = ITEM_PATTERN.match(line)
        if not item:
            continue
        if current is None:
            current = {"id": str(len(phases) + 1), "name": "General", "tasks": []}
            phases.append(current)
        task_id = f"{current['id']}.{len(current['tasks']) + 1}"
        current["tasks"].append(_parse_item(item.group(1).strip(), task_id))

    return {"phases": [phase for phase in phases if phase["tasks"]]}
