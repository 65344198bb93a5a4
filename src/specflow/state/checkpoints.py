from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from specflow.errors import SessionStateError

CHECKPOINT_PATTERN = re.compile(r"^chk-(\d{6,})-[0-9a-f]+\.json$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class Checkpoint:
    session_id: str
    current_phase: str
    tasks_completed: list[str] = field(default_factory=list)
    tasks_pending: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    last_action: str = ""
    resume_instructions: str = ""
    step_results: list[dict[str, Any]] | None = None
    checkpoint_id: str = ""
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "checkpointId": self.checkpoint_id,
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "currentPhase": self.current_phase,
            "tasksCompleted": list(self.tasks_completed),
            "tasksPending": list(self.tasks_pending),
            "variables": self.variables,
            "lastAction": self.last_action,
            "resumeInstructions": self.resume_instructions,
        }
        if self.step_results is not None:
            payload["stepResults"] = self.step_results
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        variables = payload.get("variables")
        step_results = payload.get("stepResults")
        return cls(
            checkpoint_id=str(payload.get("checkpointId", "")),
            session_id=str(payload.get("sessionId", "")),
            created_at=str(payload.get("createdAt", "")),
            current_phase=str(payload.get("currentPhase") or "init"),
            tasks_completed=[str(item) for item in payload.get("tasksCompleted", [])],
            tasks_pending=[str(item) for item in payload.get("tasksPending", [])],
            variables=variables if isinstance(variables, dict) else {},
            last_action=str(payload.get("lastAction", "")),
            resume_instructions=str(payload.get("resumeInstructions", "")),
            step_results=step_results if isinstance(step_results, list) else None,
        )


class CheckpointStore:
    """Snapshots stored as ``<root>/<session>/checkpoints/chk-<seq>-<hex>.json``.

    The zero-padded sequence number makes "latest" the lexically greatest
    file name; timestamps are informational only.
    """

    def __init__(self, sessions_root: Path) -> None:
        self.sessions_root = sessions_root

    def _directory(self, session_id: str) -> Path:
        return self.sessions_root / session_id / "checkpoints"

    def _sequence_numbers(self, session_id: str) -> list[tuple[int, Path]]:
        directory = self._directory(session_id)
        if not directory.exists():
            return []
        numbered: list[tuple[int, Path]] = []
        for path in directory.iterdir():
            match = CHECKPOINT_PATTERN.match(path.name)
            if match:
                numbered.append((int(match.group(1)), path))
        return sorted(numbered)

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        directory = self._directory(checkpoint.session_id)
        directory.mkdir(parents=True, exist_ok=True)
        existing = self._sequence_numbers(checkpoint.session_id)
        sequence = existing[-1][0] + 1 if existing else 1
        checkpoint.checkpoint_id = f"chk-{sequence:06d}-{uuid4().hex[:6]}"
        target = directory / f"{checkpoint.checkpoint_id}.json"
        temp_path = target.with_suffix(".json.tmp")
        serialized = json.dumps(checkpoint.to_dict(), ensure_ascii=False, indent=2)
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
        return checkpoint

    def load(self, session_id: str, checkpoint_id: str) -> Checkpoint | None:
        path = self._directory(session_id) / f"{checkpoint_id}.json"
        if not path.exists():
            return None
        return self._read(path)

    def load_latest(self, session_id: str) -> Checkpoint | None:
        existing = self._sequence_numbers(session_id)
        if not existing:
            return None
        return self._read(existing[-1][1])

    def history(self, session_id: str) -> list[Checkpoint]:
        return [self._read(path) for _, path in self._sequence_numbers(session_id)]

    @staticmethod
    def _read(path: Path) -> Checkpoint:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SessionStateError(f"Checkpoint {path.name} is unreadable: {exc}") from exc
        if not isinstance(payload, dict):
            raise SessionStateError(f"Checkpoint {path.name} is not an object.")
        return Checkpoint.from_dict(payload)
