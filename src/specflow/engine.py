from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from specflow.config import SpecflowConfig
from specflow.errors import (
    ConfigurationError,
    EscalationError,
    GateFailure,
    PauseRequested,
    SessionNotFound,
    TransientError,
)
from specflow.handlers import HandlerRegistry, SessionHandle
from specflow.reporters import ReporterManager
from specflow.schemas import ReviewResult
from specflow.state.audit import AuditLog, tasks_completed
from specflow.state.checkpoints import Checkpoint
from specflow.state.context import ContextStore
from specflow.state.sessions import Blocker, SessionStore
from specflow.tasks import Task, TaskGraph, build_plan

logger = logging.getLogger(__name__)

PHASES = ("init", "analyze", "plan", "execute", "verify", "publish")
DRY_RUN_PHASES = PHASES[: PHASES.index("plan") + 1]
PAUSE_REASON = "pause requested"

RunStatus = Literal["completed", "failed", "paused"]


@dataclass(slots=True)
class WorkflowResult:
    session_id: str
    status: RunStatus
    phases_completed: list[str] = field(default_factory=list)
    blocker: Blocker | None = None
    error: str | None = None
    checkpoint_id: str | None = None


class WorkflowEngine:
    """Walks the fixed phase sequence for one session at a time.

    Every transition is journaled before the next one starts, and a
    checkpoint follows each completed phase and task, so a crash or pause
    resumes at the last completed boundary.
    """

    def __init__(
        self,
        store: SessionStore,
        registry: HandlerRegistry,
        config: SpecflowConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.config = config or SpecflowConfig.default()
        self._pause_requests: set[str] = set()

    def request_pause(self, session_id: str) -> None:
        self._pause_requests.add(session_id)

    def _pause_pending(self, session_id: str) -> bool:
        return session_id in self._pause_requests or self.store.pause_requested(session_id)

    def _audit_log(self, handle: SessionHandle) -> AuditLog:
        listener = ReporterManager(handle, handle.collaborators.reporters)
        return self.store.audit_log(handle.session_id, listener)

    def _check_pause(self, handle: SessionHandle, step: str) -> None:
        if self._pause_pending(handle.session_id):
            raise PauseRequested(PAUSE_REASON, step=step, context={"step": step})

    async def start(self, handle: SessionHandle, *, dry_run: bool = False) -> WorkflowResult:
        with self.store.lock(handle.session_id):
            logger.info("Starting session %s (dry_run=%s)", handle.session_id, dry_run)
            return await self._run_from(handle, 0, dry_run=dry_run)

    async def resume(
        self,
        handle: SessionHandle,
        *,
        accept_blocked: Iterable[str] = (),
    ) -> WorkflowResult:
        session_id = handle.session_id
        with self.store.lock(session_id):
            checkpoint = self.store.checkpoints.load_latest(session_id)
            if checkpoint is None:
                raise SessionNotFound(session_id)
            audit = self._audit_log(handle)
            handle.context = ContextStore.restore(checkpoint.variables)
            accepted = list(handle.context.get("acceptedBlocked") or [])
            accepted.extend(task_id for task_id in accept_blocked if task_id not in accepted)
            handle.context.set("acceptedBlocked", accepted)
            self._restore_task_statuses(handle.context, checkpoint, audit, set(accepted))

            done = handle.context.get("phasesCompleted") or []
            phase = checkpoint.current_phase if checkpoint.current_phase in PHASES else "init"
            index = PHASES.index(phase) + (1 if phase in done else 0)

            self._pause_requests.discard(session_id)
            self.store.clear_pause_request(session_id)
            cleared = self.store.clear_blocker(session_id)
            audit.record(
                "resume",
                "completed",
                {
                    "checkpoint": checkpoint.checkpoint_id,
                    "phase": PHASES[index] if index < len(PHASES) else "complete",
                    "acceptedBlocked": accepted,
                    "clearedBlocker": cleared.reason if cleared else None,
                },
            )
            self.store.set_status(session_id, "running")
            logger.info("Resuming session %s at phase index %s", session_id, index)
            return await self._run_from(handle, index, dry_run=False)

    @staticmethod
    def _restore_task_statuses(
        ctx: ContextStore,
        checkpoint: Checkpoint,
        audit: AuditLog,
        accepted: set[str],
    ) -> None:
        completed = set(checkpoint.tasks_completed) | set(tasks_completed(audit.read_all()))
        restored: list[dict[str, Any]] = []
        for payload in ctx.get("tasks") or []:
            task = dict(payload)
            if task["id"] in completed:
                task["status"] = "completed"
            elif task.get("status") == "blocked" and task["id"] in accepted:
                task["status"] = "blocked"
            else:
                # Partial progress is discarded; the task reruns from scratch.
                task["status"] = "pending"
            restored.append(task)
        if restored:
            _sync_tasks(ctx, restored)

    async def _run_from(
        self,
        handle: SessionHandle,
        start_index: int,
        *,
        dry_run: bool,
    ) -> WorkflowResult:
        audit = self._audit_log(handle)
        phases = DRY_RUN_PHASES if dry_run else PHASES
        for phase in phases[start_index:]:
            try:
                await self._run_phase(handle, phase, audit)
            except EscalationError as exc:
                return self._pause(handle, phase, exc, audit)
            except ConfigurationError as exc:
                return self._fail(handle, phase, exc, audit)
            except Exception as exc:
                self._fail(handle, phase, exc, audit)
                raise

        audit.record("complete", "completed", {"dry_run": dry_run})
        self.store.set_status(handle.session_id, "completed")
        self.store.write_context(handle.session_id, handle.context.snapshot())
        logger.info("Session %s completed", handle.session_id)
        return WorkflowResult(
            session_id=handle.session_id,
            status="completed",
            phases_completed=list(handle.context.get("phasesCompleted") or []),
        )

    async def _run_phase(self, handle: SessionHandle, phase: str, audit: AuditLog) -> None:
        self._check_pause(handle, phase)
        self._entry_gate(handle, phase)
        audit.record(phase, "started")
        logger.info("Phase %s started for %s", phase, handle.session_id)

        if phase == "execute":
            await self._execute_tasks(handle, audit)
        else:
            await self._call_handler(handle, phase)

        self._exit_gate(handle, phase)
        done = list(handle.context.get("phasesCompleted") or [])
        if phase not in done:
            done.append(phase)
        handle.context.set("phasesCompleted", done)
        audit.record(phase, "completed")
        self._checkpoint(handle, phase, last_action=phase)

    async def _call_handler(
        self,
        handle: SessionHandle,
        name: str,
        payload: Any = None,
        *,
        step: str | None = None,
    ) -> Any:
        handler = self.registry.get(name)
        max_attempts = max(1, self.config.workflow.max_attempts)
        label = step or name
        last_error: TransientError | None = None
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            try:
                return await handler(handle, payload)
            except TransientError as exc:
                last_error = exc
                logger.warning("%s attempt %s/%s failed: %s", label, attempt, max_attempts, exc)
                if not exc.retriable:
                    break
        raise EscalationError(
            f"{label} failed after {attempt} attempt(s): {last_error}",
            step=label,
            context={"step": label, "attempts": attempt, "last_error": str(last_error)},
        )

    def _entry_gate(self, handle: SessionHandle, phase: str) -> None:
        ctx = handle.context
        if phase == "analyze":
            spec_path = handle.spec_path
            if not spec_path.is_file() or not os.access(spec_path, os.R_OK):
                raise ConfigurationError(f"Spec file is missing or unreadable: {spec_path}")
        elif phase == "plan" and not ctx.get("analysis"):
            raise GateFailure("plan requires an analysis", step=phase)
        elif phase in {"execute", "verify"} and not ctx.get("tasks"):
            raise GateFailure(f"{phase} requires planned tasks", step=phase)
        elif phase == "publish":
            verification = ctx.get("verification") or {}
            if not verification.get("passed"):
                raise GateFailure(
                    "publish requires a passing verification",
                    step=phase,
                    context={"verification": verification},
                )

    def _exit_gate(self, handle: SessionHandle, phase: str) -> None:
        ctx = handle.context
        if phase == "plan":
            build_plan(ctx.get("tasks") or [])
        elif phase == "execute":
            accepted = set(ctx.get("acceptedBlocked") or [])
            unfinished = [
                task["id"]
                for task in ctx.get("tasks") or []
                if task["status"] != "completed"
                and not (task["status"] == "blocked" and task["id"] in accepted)
            ]
            if unfinished:
                raise GateFailure(
                    f"tasks not finished: {', '.join(unfinished)}",
                    step=phase,
                    context={"unfinished": unfinished},
                )
        elif phase == "verify":
            verification = ctx.get("verification") or {}
            if verification.get("exitCode") != 0:
                raise GateFailure(
                    f"tests failed with exit code {verification.get('exitCode')}",
                    step=phase,
                    context=verification,
                )
            if verification.get("dirtyPaths"):
                raise GateFailure(
                    "working tree has uncommitted changes: "
                    + ", ".join(verification["dirtyPaths"][:20]),
                    step=phase,
                    context=verification,
                )
            compliance = verification.get("compliance")
            if compliance and compliance.get("status") != "complete":
                raise GateFailure(
                    f"acceptance criteria not met: {compliance['completed']}/"
                    f"{compliance['total']} ({compliance['percentage']}%)",
                    step=phase,
                    context=verification,
                )
        elif phase == "publish":
            pull_request = ctx.get("pullRequest") or {}
            if not pull_request.get("url") or not pull_request.get("number"):
                raise GateFailure("no pull request was opened", step=phase)
            issue_ids = set((ctx.get("issueIds") or {}).values())
            missing = sorted(issue_ids - set(ctx.get("issuesCompleted") or []))
            if missing:
                raise GateFailure(
                    f"issues not marked complete: {', '.join(missing)}",
                    step=phase,
                    context={"issues": missing},
                )

    async def _execute_tasks(self, handle: SessionHandle, audit: AuditLog) -> None:
        ctx = handle.context
        graph = TaskGraph.from_dicts(ctx.get("tasks") or [])
        graph.validate()
        while (task := graph.next_ready()) is not None:
            self._check_pause(handle, f"implement:{task.id}")
            await self._run_task(handle, graph, task, audit)

        # Tasks stranded behind an accepted blocked dependency cannot run.
        for task in graph:
            if task.status == "pending":
                graph.set_status(task.id, "blocked")
        _sync_tasks(ctx, graph.to_dicts())

    async def _run_task(
        self,
        handle: SessionHandle,
        graph: TaskGraph,
        task: Task,
        audit: AuditLog,
    ) -> None:
        ctx = handle.context
        step = f"implement:{task.id}"
        issue_id = (ctx.get("issueIds") or {}).get(task.id)
        graph.set_status(task.id, "in_progress")
        _sync_tasks(ctx, graph.to_dicts())
        issues = handle.collaborators.issues
        if issue_id and issues is not None:
            issues.update(issue_id, status="in_progress")
        audit.record(step, "started", {"title": task.title})

        results: dict[str, Any] = dict(ctx.get("taskResults") or {})
        try:
            implementation = await self._call_handler(
                handle,
                "implement",
                {
                    "task": task.to_dict(),
                    "dependencyResults": graph.completed_results(task, results),
                    "issueId": issue_id,
                },
                step=step,
            )
            review: ReviewResult = await self._call_handler(
                handle,
                "review",
                {"task": task.to_dict(), "implementation": implementation.to_dict()},
                step=step,
            )
            fix_attempts = await self._resolve_findings(handle, task, review, step)
        except EscalationError as exc:
            graph.set_status(task.id, "blocked")
            _sync_tasks(ctx, graph.to_dicts())
            exc.context.setdefault("task", task.id)
            audit.record(step, "failed", {"reason": exc.reason, **exc.context})
            raise

        minor = [dict(issue.to_dict(), task=task.id) for issue in review.by_severity("minor")]
        accumulated = list(ctx.get("minorIssues") or [])
        accumulated.extend(minor)
        ctx.set("minorIssues", accumulated)

        graph.set_status(task.id, "completed")
        results[task.id] = dict(implementation.to_dict(), fixAttempts=fix_attempts)
        ctx.set("taskResults", results)
        _sync_tasks(ctx, graph.to_dicts())
        metadata: dict[str, Any] = {"fixAttempts": fix_attempts}
        if minor:
            metadata["minorIssues"] = minor
        audit.record(step, "completed", metadata)
        self._checkpoint(handle, "execute", last_action=step)

        # Escalate once, when the running total first crosses the threshold.
        threshold = self.config.workflow.minor_issue_threshold
        previous = len(accumulated) - len(minor)
        if threshold > 0 and previous <= threshold < len(accumulated):
            raise EscalationError(
                f"minor review findings exceeded threshold ({len(accumulated)} > {threshold})",
                step=step,
                context={"minorIssues": len(accumulated), "threshold": threshold},
            )

    async def _resolve_findings(
        self,
        handle: SessionHandle,
        task: Task,
        review: ReviewResult,
        step: str,
    ) -> int:
        max_fix_attempts = max(1, self.config.workflow.max_fix_attempts)
        total = 0
        for finding in review.by_severity("critical", "important"):
            last_error = ""
            for attempt in range(1, max_fix_attempts + 1):
                total += 1
                result = await self._call_handler(
                    handle,
                    "fix",
                    {"task": task.to_dict(), "issue": finding.to_dict(), "attempt": attempt},
                    step=step,
                )
                if result.fixed:
                    break
                last_error = result.summary or "fixer reported the finding unresolved"
            else:
                raise EscalationError(
                    f"{finding.severity} review finding unresolved after "
                    f"{max_fix_attempts} fix attempt(s): {finding.description}",
                    step=step,
                    context={
                        "task": task.id,
                        "attempts": max_fix_attempts,
                        "last_error": last_error,
                        "finding": finding.to_dict(),
                    },
                )
        return total

    def _checkpoint(self, handle: SessionHandle, phase: str, *, last_action: str) -> Checkpoint:
        ctx = handle.context
        variables = ctx.snapshot()
        checkpoint = self.store.checkpoints.save(
            Checkpoint(
                session_id=handle.session_id,
                current_phase=phase,
                tasks_completed=list(ctx.get("tasksCompleted") or []),
                tasks_pending=list(ctx.get("tasksPending") or []),
                variables=variables,
                last_action=last_action,
                resume_instructions=f"specflow run --resume {handle.session_id}",
            )
        )
        self.store.write_context(handle.session_id, variables)
        return checkpoint

    def _pause(
        self,
        handle: SessionHandle,
        phase: str,
        exc: EscalationError,
        audit: AuditLog,
    ) -> WorkflowResult:
        session_id = handle.session_id
        if isinstance(exc, PauseRequested):
            self._pause_requests.discard(session_id)
            self.store.clear_pause_request(session_id)
        blocker = Blocker(reason=exc.reason, context={"phase": phase, **exc.context})
        audit.record(phase, "failed", {"paused": True, "reason": exc.reason})
        self.store.write_blocker(session_id, blocker)
        checkpoint = self._checkpoint(handle, phase, last_action=f"paused at {exc.step or phase}")
        self.store.set_status(session_id, "paused")
        logger.warning("Session %s paused at %s: %s", session_id, phase, exc.reason)
        return WorkflowResult(
            session_id=session_id,
            status="paused",
            phases_completed=list(handle.context.get("phasesCompleted") or []),
            blocker=blocker,
            checkpoint_id=checkpoint.checkpoint_id,
        )

    def _fail(
        self,
        handle: SessionHandle,
        phase: str,
        exc: Exception,
        audit: AuditLog,
    ) -> WorkflowResult:
        session_id = handle.session_id
        error = f"{type(exc).__name__}: {exc}"
        audit.record(phase, "failed", {"error": error})
        audit.record("complete", "failed", {"phase": phase, "error": error})
        self.store.set_status(session_id, "failed")
        self.store.write_context(session_id, handle.context.snapshot())
        logger.error("Session %s failed at %s: %s", session_id, phase, error)
        return WorkflowResult(
            session_id=session_id,
            status="failed",
            phases_completed=list(handle.context.get("phasesCompleted") or []),
            error=error,
        )


def _sync_tasks(ctx: ContextStore, tasks: list[dict[str, Any]]) -> None:
    ctx.set("tasks", tasks)
    ctx.set("tasksCompleted", [task["id"] for task in tasks if task["status"] == "completed"])
    ctx.set("tasksPending", [task["id"] for task in tasks if task["status"] != "completed"])
