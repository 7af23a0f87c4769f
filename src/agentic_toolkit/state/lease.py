from __future__ import annotations

import json
import logging
import os
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class LeaseError(RuntimeError):
    """Raised when the run lease file cannot be read or written."""


class LoopAlreadyRunningError(LeaseError):
    """Raised when another execution loop already owns the task document."""


class LeaseLostError(LeaseError):
    """Raised when a held lease was taken over by another execution loop."""


class RunLease:
    """Exclusive, expiring claim on a task document for one execution loop.

    The lease is a small JSON file next to the task document. A lease whose
    ``expires_epoch`` has passed belongs to a run that died without releasing
    it and may be taken over.
    """

    def __init__(self, path: Path, *, ttl_seconds: float = 300.0) -> None:
        self.path = path
        self.ttl_seconds = max(1.0, float(ttl_seconds))
        self.run_id: str | None = None

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        except OSError as exc:
            raise LeaseError(f"Could not read run lease {self.path}: {exc}") from exc
        return payload if isinstance(payload, dict) else None

    def _payload(self, run_id: str, *, task_id: str | None = None) -> str:
        payload: dict[str, Any] = {
            "run_id": run_id,
            "pid": os.getpid(),
            "heartbeat_at": _utcnow_iso(),
            "expires_epoch": time.time() + self.ttl_seconds,
        }
        if task_id:
            payload["task_id"] = task_id
        return json.dumps(payload)

    def _write(self, run_id: str, *, task_id: str | None = None) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(self._payload(run_id, task_id=task_id), encoding="utf-8")
        except OSError as exc:
            raise LeaseError(f"Could not write run lease {self.path}: {exc}") from exc

    def _check_existing(self, run_id: str) -> None:
        active = self.read()
        if active is None:
            # Empty or partial file: another loop may be between create and write.
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return
            except OSError as exc:
                raise LeaseError(f"Could not inspect run lease {self.path}: {exc}") from exc
            if age < self.ttl_seconds:
                raise LoopAlreadyRunningError(
                    f"Run lease {self.path} is being written by another execution loop."
                )
            logger.warning("Replacing unreadable run lease %s", self.path)
            return
        active_run = str(active.get("run_id", ""))
        expires = float(active.get("expires_epoch", 0) or 0)
        if active_run and active_run != run_id and expires > time.time():
            raise LoopAlreadyRunningError(
                f"Another execution loop ({active_run}, pid {active.get('pid')}) "
                f"holds {self.path}."
            )
        if active_run and active_run != run_id:
            logger.warning("Taking over expired run lease from %s", active_run)

    def acquire(self, run_id: str) -> None:
        # The payload goes through the O_EXCL descriptor so the file is never
        # visible without an owner.
        payload = self._payload(run_id)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            self._check_existing(run_id)
            self._write(run_id)
        except OSError as exc:
            raise LeaseError(f"Could not create run lease {self.path}: {exc}") from exc
        else:
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
            except OSError as exc:
                raise LeaseError(f"Could not write run lease {self.path}: {exc}") from exc
        self.run_id = run_id

    def heartbeat(self, *, task_id: str | None = None) -> None:
        """Extend the lease; raises ``LeaseLostError`` if another run now owns it."""
        if self.run_id is None:
            raise LeaseError("Cannot heartbeat a lease that was never acquired.")
        active = self.read()
        owner = str(active.get("run_id", "")) if active is not None else None
        if owner != self.run_id:
            raise LeaseLostError(
                f"Run lease {self.path} is no longer held by {self.run_id} "
                f"(owner: {owner or 'none'})."
            )
        self._write(self.run_id, task_id=task_id)

    def release(self) -> None:
        if self.run_id is None:
            return
        active = self.read()
        if active is not None and str(active.get("run_id", "")) == self.run_id:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise LeaseError(f"Could not release run lease {self.path}: {exc}") from exc
        self.run_id = None
