"""Pattern-based policy checks used as the execution loop's gate.

The default rules are illustrative. Anything exposing ``validate_file`` can
stand in for ``RulesEngine``; the loop only looks for ``block`` actions.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol

Action = Literal["block", "warn", "info", "error"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Violation:
    rule_id: str
    rule_name: str
    category: str
    severity: str
    description: str
    action: Action
    file: str = "unknown"
    line: int = 0
    matches: int = 0
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "category": self.category,
            "severity": self.severity,
            "description": self.description,
            "action": self.action,
            "file": self.file,
            "line": self.line,
            "matches": self.matches,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class Rule:
    id: str
    name: str
    category: str
    severity: str
    description: str
    pattern: re.Pattern[str]
    action: Action
    enabled: bool = True


class PolicyGate(Protocol):
    def validate_file(self, path: Path) -> list[Violation]:
        """Return violations found in ``path``."""


class PolicyBlockedError(RuntimeError):
    """Raised when a task's output artifact carries a blocking violation."""

    def __init__(self, path: str, violation: Violation) -> None:
        super().__init__(f"Rules violation in {path}: {violation.description}")
        self.path = path
        self.violation = violation


def default_rules() -> list[Rule]:
    return [
        Rule(
            id="security-no-hardcoded-secrets",
            name="No Hardcoded Secrets",
            category="security",
            severity="critical",
            description="Detects hardcoded passwords, API keys, and sensitive data",
            pattern=re.compile(
                r"(password|secret|api_?key|token)\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE
            ),
            action="block",
        ),
        Rule(
            id="security-sql-injection",
            name="SQL Injection Prevention",
            category="security",
            severity="critical",
            description="Detects SQL statements assembled with string formatting",
            pattern=re.compile(
                r"(execute|executemany)\(\s*f['\"]|(SELECT|INSERT|UPDATE|DELETE)\b[^\n]*['\"]\s*%",
                re.IGNORECASE,
            ),
            action="block",
        ),
        Rule(
            id="compliance-personal-data-handling",
            name="Personal Data Handling",
            category="compliance",
            severity="high",
            description="Flags code touching personal data for privacy review",
            pattern=re.compile(
                r"(personal[\s_]*data|user[\s_]*information|\bpii\b)", re.IGNORECASE
            ),
            action="warn",
        ),
        Rule(
            id="maintainability-debug-print",
            name="Debug Print Statements",
            category="compliance",
            severity="medium",
            description="Use logging instead of print for audit trails",
            pattern=re.compile(r"^\s*print\(", re.MULTILINE),
            action="warn",
        ),
        Rule(
            id="maintainability-large-functions",
            name="Large Function Detection",
            category="maintainability",
            severity="low",
            description="Identifies functions that may be too large",
            pattern=re.compile(r"^def \w+\(.*\):\n(?:(?:    .*)?\n){80,}", re.MULTILINE),
            action="info",
        ),
    ]


class RulesEngine:
    def __init__(self, rules: list[Rule] | None = None, *, disabled: list[str] | None = None) -> None:
        self._rules: dict[str, Rule] = {}
        for rule in default_rules() if rules is None else rules:
            self.add_rule(rule)
        for rule_id in disabled or []:
            self.disable_rule(rule_id)
        self.violations: list[Violation] = []

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules.values())

    def add_rule(self, rule: Rule) -> None:
        self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def _set_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        self._rules[rule_id] = replace(rule, enabled=enabled)
        return True

    def enable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, True)

    def disable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, False)

    @staticmethod
    def _line_number(text: str, offset: int) -> int:
        return text.count("\n", 0, offset) + 1

    def validate_text(self, text: str, file_path: str = "unknown") -> list[Violation]:
        found: list[Violation] = []
        for rule in self._rules.values():
            if not rule.enabled:
                continue
            matches = list(rule.pattern.finditer(text))
            if not matches:
                continue
            found.append(
                Violation(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    category=rule.category,
                    severity=rule.severity,
                    description=rule.description,
                    action=rule.action,
                    file=file_path,
                    line=self._line_number(text, matches[0].start()),
                    matches=len(matches),
                )
            )
        self.violations.extend(found)
        return found

    def validate_file(self, path: Path) -> list[Violation]:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return [
                Violation(
                    rule_id="file-read-error",
                    rule_name="File Read Error",
                    category="system",
                    severity="error",
                    description=f"Could not read file: {exc}",
                    action="error",
                    file=str(path),
                )
            ]
        return self.validate_text(text, str(path))

    def summary(self) -> dict[str, Any]:
        rules = self.rules
        return {
            "total": len(rules),
            "enabled": sum(1 for rule in rules if rule.enabled),
            "disabled": sum(1 for rule in rules if not rule.enabled),
            "by_category": dict(Counter(rule.category for rule in rules)),
            "by_severity": dict(Counter(rule.severity for rule in rules)),
        }

    def compliance_report(self) -> dict[str, Any]:
        violations = self.violations
        recommendations: list[str] = []
        if any(item.severity == "critical" for item in violations):
            recommendations.append("Address critical violations immediately before deployment")
        if any(item.category == "security" for item in violations):
            recommendations.append("Security violations detected - conduct security review")
        if any(item.category == "compliance" for item in violations):
            recommendations.append(
                "Compliance violations found - ensure regulatory requirements are met"
            )
        if not recommendations:
            recommendations.append("Code passes all automated checks - consider manual review")
        return {
            "timestamp": _utcnow_iso(),
            "overall": "PASS" if not violations else "FAIL",
            "violations": [item.to_dict() for item in violations[:50]],
            "rules": self.summary(),
            "recommendations": recommendations,
        }


def check_outputs(gate: PolicyGate, output_files: list[str], root: Path) -> None:
    """Raise ``PolicyBlockedError`` on the first blocking violation.

    Paths that do not exist yet are skipped.
    """
    for raw_path in output_files:
        path = Path(raw_path)
        if not path.is_absolute():
            path = root / path
        if not path.exists():
            continue
        for violation in gate.validate_file(path):
            if violation.action == "block":
                raise PolicyBlockedError(raw_path, violation)
