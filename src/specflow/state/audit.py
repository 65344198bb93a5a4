from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

AuditStatus = Literal["started", "completed", "failed"]
AUDIT_STATUSES = {"started", "completed", "failed"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True, frozen=True)
class AuditEntry:
    step: str
    status: AuditStatus
    timestamp: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] | None = None

    @property
    def phase(self) -> str:
        return self.step.split(":", maxsplit=1)[0]

    @property
    def task_id(self) -> str | None:
        if ":" not in self.step:
            return None
        return self.step.split(":", maxsplit=1)[1]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step": self.step,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AuditEntry:
        metadata = payload.get("metadata")
        return cls(
            step=str(payload["step"]),
            status=payload["status"],
            timestamp=str(payload.get("timestamp") or ""),
            metadata=metadata if isinstance(metadata, dict) else None,
        )


AuditListener = Callable[[AuditEntry], None]


class AuditReader:
    """Iterable view over a journal; every iteration re-reads from the start."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __iter__(self) -> Iterator[AuditEntry]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, raw_line in enumerate(handle, start=1):
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    # A crash can leave a torn final line; everything before it stands.
                    logger.warning("Skipping unreadable audit line %s in %s", line_number, self.path)
                    continue
                yield AuditEntry.from_dict(payload)


class AuditLog:
    def __init__(self, path: Path, listener: AuditListener | None = None) -> None:
        self.path = path
        self.listener = listener

    def append(self, entry: AuditEntry) -> None:
        if entry.status not in AUDIT_STATUSES:
            raise ValueError(f"Unsupported audit status: {entry.status}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.to_dict(), ensure_ascii=False, separators=(",", ":"))
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        logger.debug("audit %s %s", entry.step, entry.status)
        if self.listener is not None:
            self.listener(entry)

    def record(
        self,
        step: str,
        status: AuditStatus,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(step=step, status=status, metadata=metadata)
        self.append(entry)
        return entry

    def read_all(self) -> AuditReader:
        return AuditReader(self.path)


def active_step(entries: Iterable[AuditEntry]) -> str:
    last: AuditEntry | None = None
    for entry in entries:
        last = entry
    if last is None:
        return "unknown"
    if last.status == "started":
        return f"{last.step} (in progress)"
    if last.status == "completed":
        return f"{last.step} just completed, waiting for next step"
    return f"{last.step} FAILED"


def phases_completed(entries: Iterable[AuditEntry], phases: Iterable[str]) -> list[str]:
    tracked = list(phases)
    done = {
        entry.step
        for entry in entries
        if entry.status == "completed" and entry.step in tracked
    }
    return [phase for phase in tracked if phase in done]


def tasks_completed(entries: Iterable[AuditEntry]) -> list[str]:
    completed: list[str] = []
    for entry in entries:
        if entry.phase != "implement" or entry.status != "completed":
            continue
        task_id = entry.task_id
        if task_id and task_id not in completed:
            completed.append(task_id)
    return completed


def derive_status(entries: Iterable[AuditEntry]) -> str:
    """Session status from the journal alone; the last decisive entry wins."""
    status = "running"
    for entry in entries:
        if entry.step == "complete":
            status = "completed" if entry.status == "completed" else "failed"
        elif entry.status == "failed" and (entry.metadata or {}).get("paused"):
            status = "paused"
        elif entry.status == "started" or entry.step == "resume":
            status = "running"
    return status


def last_activity(entries: Iterable[AuditEntry]) -> str | None:
    last: str | None = None
    for entry in entries:
        last = entry.timestamp
    return last
