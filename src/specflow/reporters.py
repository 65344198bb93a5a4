"""Progress reporters fed from the audit log.

Every entry journaled during a run is fanned out to the reporters attached to
the session's collaborators. A reporter that raises is logged and skipped;
reporting never decides the outcome of a run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING

from specflow.errors import ConfigurationError
from specflow.state.audit import AuditEntry

if TYPE_CHECKING:
    from specflow.handlers.registry import SessionHandle

logger = logging.getLogger(__name__)


class WorkflowReporter(ABC):
    name: str = "reporter"

    @abstractmethod
    def on_audit_entry(self, session: SessionHandle, entry: AuditEntry) -> None:
        """Observe one journaled transition."""


class LogReporter(WorkflowReporter):
    name = "log"

    def on_audit_entry(self, session: SessionHandle, entry: AuditEntry) -> None:
        logger.info("[%s] %s %s", session.session_id, entry.step, entry.status)


def render_progress(session: SessionHandle, entry: AuditEntry) -> str:
    ctx = session.context
    lines = [f"**specflow session `{session.session_id}`: {entry.status}**", ""]
    phases = ctx.get("phasesCompleted") or []
    lines.append(f"Phases completed: {', '.join(phases) or '-'}")
    tasks = ctx.get("tasks") or []
    done = sum(1 for task in tasks if task.get("status") == "completed")
    lines.append(f"Tasks completed: {done}/{len(tasks)}")
    for task in tasks:
        mark = "x" if task.get("status") == "completed" else " "
        lines.append(f"- [{mark}] {task['id']}: {task['title']}")
    compliance = (ctx.get("verification") or {}).get("compliance")
    if compliance:
        lines.append("")
        lines.append(
            f"Acceptance criteria: {compliance['completed']}/{compliance['total']} "
            f"({compliance['percentage']}%)"
        )
    return "\n".join(lines)


class PullRequestCommentReporter(WorkflowReporter):
    """Posts a progress summary on the session's pull request when the run ends."""

    name = "pr-comment"

    def on_audit_entry(self, session: SessionHandle, entry: AuditEntry) -> None:
        if entry.step != "complete":
            return
        number = (session.context.get("pullRequest") or {}).get("number")
        vcs = session.collaborators.vcs
        if not number or vcs is None:
            return
        vcs.comment_on_pull_request(
            int(number), render_progress(session, entry), cwd=session.worktree_path
        )


REPORTER_TYPES: dict[str, type[WorkflowReporter]] = {
    LogReporter.name: LogReporter,
    PullRequestCommentReporter.name: PullRequestCommentReporter,
}


def build_reporters(names: Iterable[str]) -> list[WorkflowReporter]:
    reporters: list[WorkflowReporter] = []
    for name in names:
        reporter_type = REPORTER_TYPES.get(name)
        if reporter_type is None:
            raise ConfigurationError(
                f"Unknown reporter '{name}'. Expected one of: {', '.join(REPORTER_TYPES)}"
            )
        reporters.append(reporter_type())
    return reporters


class ReporterManager:
    """Audit listener bound to one session handle."""

    def __init__(self, session: SessionHandle, reporters: Iterable[WorkflowReporter]) -> None:
        self.session = session
        self.reporters = list(reporters)

    def __call__(self, entry: AuditEntry) -> None:
        for reporter in self.reporters:
            try:
                reporter.on_audit_entry(self.session, entry)
            except Exception as exc:
                logger.warning(
                    "Reporter %s failed on %s %s: %s", reporter.name, entry.step, entry.status, exc
                )
