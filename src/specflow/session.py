from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from specflow.config import SpecflowConfig
from specflow.engine import PHASES, WorkflowEngine, WorkflowResult
from specflow.errors import SessionStateError
from specflow.handlers import Collaborators, HandlerRegistry, SessionHandle, create_default_registry
from specflow.state.audit import (
    active_step,
    derive_status,
    last_activity,
    phases_completed,
    tasks_completed,
)
from specflow.state.context import ContextStore
from specflow.state.sessions import TERMINAL_STATUSES, SessionRecord, SessionStore, new_session_id

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(slots=True)
class SessionStatusReport:
    session_id: str
    status: str
    active_step: str
    phases_completed: list[str] = field(default_factory=list)
    tasks_completed: list[str] = field(default_factory=list)
    tasks_pending: list[str] = field(default_factory=list)
    duration: str = "0m 0s"
    blocker: dict[str, Any] | None = None
    last_activity: str | None = None
    spec_path: str = ""
    branch_name: str = ""
    worktree_path: str = ""
    checkpoint_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "activeStep": self.active_step,
            "phasesCompleted": list(self.phases_completed),
            "tasksCompleted": list(self.tasks_completed),
            "tasksPending": list(self.tasks_pending),
            "duration": self.duration,
            "blocker": self.blocker,
            "lastActivity": self.last_activity,
            "specPath": self.spec_path,
            "branchName": self.branch_name,
            "worktreePath": self.worktree_path,
            "checkpointId": self.checkpoint_id,
        }


class SessionManager:
    def __init__(
        self,
        repo_root: Path,
        config: SpecflowConfig,
        collaborators: Collaborators,
        *,
        registry: HandlerRegistry | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.collaborators = collaborators
        self.store = SessionStore(repo_root / config.state.sessions_dir)
        self.engine = WorkflowEngine(self.store, registry or create_default_registry(), config)

    def _isolate(self, session_id: str) -> tuple[str, Path]:
        workflow = self.config.workflow
        mode = workflow.isolation
        vcs = self.collaborators.vcs
        if mode == "none" or vcs is None:
            branch = vcs.current_branch(self.repo_root) if vcs is not None else ""
            return branch, self.repo_root
        branch = f"{workflow.branch_prefix}{session_id}"
        if mode == "branch":
            vcs.create_branch(branch, self.repo_root)
            return branch, self.repo_root
        worktree = self.repo_root / self.config.state.worktrees_dir / session_id
        vcs.create_worktree(branch, worktree, workflow.base_branch)
        return branch, worktree

    def _handle(self, record: SessionRecord, context: ContextStore | None = None) -> SessionHandle:
        return SessionHandle(
            session_id=record.session_id,
            spec_path=Path(record.spec_path),
            worktree_path=Path(record.worktree_path),
            branch_name=record.branch_name,
            context=context or ContextStore(),
            collaborators=self.collaborators,
            config=self.config,
        )

    async def start(self, spec_path: Path, *, dry_run: bool = False) -> WorkflowResult:
        session_id = new_session_id()
        resolved = spec_path if spec_path.is_absolute() else (self.repo_root / spec_path)
        branch, worktree = self._isolate(session_id)
        record = self.store.create(
            SessionRecord(
                session_id=session_id,
                spec_path=str(resolved.resolve()),
                branch_name=branch,
                worktree_path=str(worktree),
                base_branch=self.config.workflow.base_branch,
                dry_run=dry_run,
            )
        )
        logger.info("Created session %s on branch %s", session_id, branch or "<current>")
        return await self.engine.start(self._handle(record), dry_run=dry_run)

    async def resume(
        self,
        session_id: str | None = None,
        *,
        accept_blocked: Iterable[str] = (),
    ) -> WorkflowResult:
        record = self.store.load(session_id) if session_id else self.store.latest()
        status = derive_status(self.store.audit_log(record.session_id).read_all())
        if status in TERMINAL_STATUSES:
            raise SessionStateError(
                f"Session {record.session_id} is {status} and cannot be resumed."
            )
        return await self.engine.resume(self._handle(record), accept_blocked=accept_blocked)

    def pause(self, session_id: str | None = None) -> str:
        record = self.store.load(session_id) if session_id else self.store.latest()
        status = derive_status(self.store.audit_log(record.session_id).read_all())
        if status in TERMINAL_STATUSES:
            raise SessionStateError(f"Session {record.session_id} is already {status}.")
        self.store.request_pause(record.session_id)
        self.engine.request_pause(record.session_id)
        return record.session_id

    def status(self, session_id: str | None = None) -> SessionStatusReport:
        record = self.store.load(session_id) if session_id else self.store.latest()
        entries = list(self.store.audit_log(record.session_id).read_all())
        checkpoint = self.store.checkpoints.load_latest(record.session_id)

        completed = tasks_completed(entries)
        pending: list[str] = []
        if checkpoint is not None:
            for task_id in checkpoint.tasks_completed:
                if task_id not in completed:
                    completed.append(task_id)
            pending = [task_id for task_id in checkpoint.tasks_pending if task_id not in completed]

        started = _parse_timestamp(entries[0].timestamp) if entries else None
        latest = last_activity(entries)
        ended = _parse_timestamp(latest)
        duration = (ended - started).total_seconds() if started and ended else 0.0

        blocker = self.store.read_blocker(record.session_id)
        status = derive_status(entries)
        return SessionStatusReport(
            session_id=record.session_id,
            status=status,
            active_step=active_step(entries),
            phases_completed=phases_completed(entries, PHASES),
            tasks_completed=completed,
            tasks_pending=pending,
            duration=format_duration(duration),
            blocker=blocker.to_dict() if blocker is not None and status == "paused" else None,
            last_activity=latest,
            spec_path=record.spec_path,
            branch_name=record.branch_name,
            worktree_path=record.worktree_path,
            checkpoint_id=checkpoint.checkpoint_id if checkpoint else None,
        )

    def list_sessions(self) -> list[SessionStatusReport]:
        return [self.status(record.session_id) for record in self.store.list_records()]
