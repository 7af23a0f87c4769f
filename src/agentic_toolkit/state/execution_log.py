from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

EntryType = Literal["start", "complete", "fail", "error"]
ENTRY_TYPES = ("start", "complete", "fail", "error")
DEFAULT_CAPACITY = 1000


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True, slots=True)
class ExecutionLogEntry:
    type: EntryType
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "message": self.message,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionLogEntry | None:
        entry_type = payload.get("type")
        if entry_type not in ENTRY_TYPES:
            return None
        metadata = payload.get("metadata")
        return cls(
            type=entry_type,
            message=str(payload.get("message", "")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            timestamp=str(payload.get("timestamp") or _utcnow_iso()),
        )


class ExecutionLog:
    """Bounded, append-only audit trail persisted as a JSON array.

    Entries beyond ``capacity`` are evicted oldest first. ``history`` keeps the
    entries appended through this instance, which is what stats and reports
    describe.
    """

    def __init__(self, path: Path, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Execution log capacity must be >= 1")
        self.path = path
        self.capacity = capacity
        self.history: list[ExecutionLogEntry] = []
        self._lock = threading.Lock()

    def _read_raw(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Execution log %s unreadable, starting a new one: %s", self.path, exc)
            return []
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def append(
        self,
        entry_type: EntryType,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(type=entry_type, message=message, metadata=metadata or {})
        with self._lock:
            self.history.append(entry)
            if len(self.history) > self.capacity:
                del self.history[: len(self.history) - self.capacity]
            records = self._read_raw()
            records.append(entry.to_dict())
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(
                    json.dumps(records[-self.capacity :], ensure_ascii=False, indent=2),
                    encoding="utf-8",
                )
            except OSError as exc:
                logger.warning("Could not save execution log %s: %s", self.path, exc)
        return entry

    def entries(
        self,
        *,
        entry_type: str | None = None,
        since: datetime | None = None,
        persisted: bool = True,
    ) -> list[ExecutionLogEntry]:
        if persisted:
            with self._lock:
                raw = self._read_raw()
            entries = [
                entry
                for entry in (ExecutionLogEntry.from_dict(item) for item in raw)
                if entry is not None
            ]
        else:
            entries = list(self.history)
        if entry_type:
            entries = [entry for entry in entries if entry.type == entry_type]
        if since is not None:
            filtered: list[ExecutionLogEntry] = []
            for entry in entries:
                stamp = _parse_timestamp(entry.timestamp)
                if stamp is not None and stamp >= since:
                    filtered.append(entry)
            entries = filtered
        return entries

    @staticmethod
    def stats(entries: list[ExecutionLogEntry]) -> dict[str, Any]:
        successful = [entry for entry in entries if entry.type == "complete"]
        failed = [entry for entry in entries if entry.type in {"fail", "error"}]
        durations = [
            float(entry.metadata["duration_ms"])
            for entry in successful
            if isinstance(entry.metadata.get("duration_ms"), (int, float))
        ]
        finished = len(successful) + len(failed)
        return {
            "total": len(entries),
            "successful": len(successful),
            "failed": len(failed),
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "success_rate": len(successful) / finished * 100 if finished else 0.0,
        }

    @staticmethod
    def recommendations(stats: dict[str, Any]) -> list[str]:
        recommendations: list[str] = []
        finished = stats["successful"] + stats["failed"]
        if finished and stats["success_rate"] < 80:
            recommendations.append("Review and fix failing tasks to improve success rate")
        if stats["average_duration_ms"] > 3_600_000:
            recommendations.append("Consider breaking down long-running tasks")
        if stats["failed"] > stats["successful"]:
            recommendations.append("Investigate root causes of task failures")
        return recommendations

    def report(self, *, window: timedelta = timedelta(hours=24)) -> dict[str, Any]:
        entries = self.entries()
        summary = self.stats(entries)
        recent = self.entries(since=datetime.now(UTC) - window)
        return {
            "timestamp": _utcnow_iso(),
            "summary": summary,
            "recent_activity": [entry.to_dict() for entry in recent[-10:]],
            "recommendations": self.recommendations(summary),
        }
