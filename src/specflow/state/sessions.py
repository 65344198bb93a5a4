from __future__ import annotations

import fcntl
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from specflow.errors import SessionLocked, SessionNotFound, SessionStateError
from specflow.state.audit import AuditListener, AuditLog
from specflow.state.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)

SessionStatus = Literal["running", "paused", "completed", "failed"]
TERMINAL_STATUSES = {"completed", "failed"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_session_id() -> str:
    return f"wf-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    spec_path: str
    branch_name: str
    worktree_path: str
    base_branch: str = ""
    status: SessionStatus = "running"
    dry_run: bool = False
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionRecord:
        known = {name: payload[name] for name in cls.__dataclass_fields__ if name in payload}
        return cls(**known)


@dataclass(slots=True)
class Blocker:
    reason: str
    context: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "context": self.context, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Blocker:
        context = payload.get("context")
        return cls(
            reason=str(payload.get("reason") or "unknown reason"),
            context=context if isinstance(context, dict) else {},
            created_at=str(payload.get("createdAt", "")),
        )


def _try_flock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _write_json(path: Path, payload: Any) -> None:
    temp_path = path.with_name(f".{path.name}.tmp")
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(temp_path, path)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SessionStateError(f"{path} is unreadable: {exc}") from exc


class SessionStore:
    """On-disk layout for every session under one sessions directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.checkpoints = CheckpointStore(root)

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def audit_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "audit.jsonl"

    def audit_log(self, session_id: str, listener: AuditListener | None = None) -> AuditLog:
        return AuditLog(self.audit_path(session_id), listener)

    def exists(self, session_id: str) -> bool:
        directory = self.session_dir(session_id)
        return (directory / "session.json").exists() and self.audit_path(session_id).exists()

    def create(self, record: SessionRecord) -> SessionRecord:
        directory = self.session_dir(record.session_id)
        if directory.exists():
            raise SessionStateError(f"Session already exists: {record.session_id}")
        directory.mkdir(parents=True)
        self.audit_path(record.session_id).touch()
        self.save(record)
        return record

    def save(self, record: SessionRecord) -> None:
        record.updated_at = _utcnow_iso()
        _write_json(self.session_dir(record.session_id) / "session.json", record.to_dict())

    def load(self, session_id: str) -> SessionRecord:
        if not self.exists(session_id):
            raise SessionNotFound(session_id)
        payload = _read_json(self.session_dir(session_id) / "session.json")
        if not isinstance(payload, dict):
            raise SessionStateError(f"Session record for {session_id} is not an object.")
        return SessionRecord.from_dict(payload)

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        record = self.load(session_id)
        record.status = status
        self.save(record)

    def list_records(self) -> list[SessionRecord]:
        if not self.root.exists():
            return []
        records: list[SessionRecord] = []
        for directory in self.root.iterdir():
            if not directory.is_dir() or not self.exists(directory.name):
                continue
            try:
                records.append(self.load(directory.name))
            except SessionStateError as exc:
                logger.warning("Ignoring unreadable session %s: %s", directory.name, exc)
        return sorted(records, key=lambda item: (item.created_at, item.session_id), reverse=True)

    def latest(self) -> SessionRecord:
        records = self.list_records()
        if not records:
            raise SessionNotFound(None)
        return records[0]

    def write_context(self, session_id: str, variables: dict[str, Any]) -> None:
        _write_json(self.session_dir(session_id) / "context.json", variables)

    def read_context(self, session_id: str) -> dict[str, Any]:
        path = self.session_dir(session_id) / "context.json"
        if not path.exists():
            return {}
        payload = _read_json(path)
        return payload if isinstance(payload, dict) else {}

    def write_blocker(self, session_id: str, blocker: Blocker) -> None:
        _write_json(self.session_dir(session_id) / "blocker.json", blocker.to_dict())

    def read_blocker(self, session_id: str) -> Blocker | None:
        path = self.session_dir(session_id) / "blocker.json"
        if not path.exists():
            return None
        payload = _read_json(path)
        return Blocker.from_dict(payload) if isinstance(payload, dict) else None

    def clear_blocker(self, session_id: str) -> Blocker | None:
        blocker = self.read_blocker(session_id)
        if blocker is None:
            return None
        directory = self.session_dir(session_id)
        history_path = directory / "blockers.jsonl"
        with history_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(blocker.to_dict(), ensure_ascii=False) + "\n")
        (directory / "blocker.json").unlink(missing_ok=True)
        return blocker

    def request_pause(self, session_id: str) -> None:
        if not self.exists(session_id):
            raise SessionNotFound(session_id)
        (self.session_dir(session_id) / "pause.request").write_text(_utcnow_iso(), encoding="utf-8")

    def pause_requested(self, session_id: str) -> bool:
        return (self.session_dir(session_id) / "pause.request").exists()

    def clear_pause_request(self, session_id: str) -> None:
        (self.session_dir(session_id) / "pause.request").unlink(missing_ok=True)

    def is_locked(self, session_id: str) -> bool:
        lock_file = self.session_dir(session_id) / "lock"
        if not lock_file.exists():
            return False
        fd = os.open(lock_file, os.O_RDONLY)
        try:
            if not _try_flock(fd):
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold an exclusive flock on the session's lock file.

        The kernel drops the lock when its owner dies, so a crashed run never
        leaves a stale lock behind. The file itself is never deleted; unlinking
        it would let two processes lock different inodes under one path.
        """
        lock_file = self.session_dir(session_id) / "lock"
        fd = os.open(lock_file, os.O_CREAT | os.O_RDWR)
        if not _try_flock(fd):
            os.close(fd)
            raise SessionLocked(f"Session {session_id} is already being run by another process.")
        try:
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
