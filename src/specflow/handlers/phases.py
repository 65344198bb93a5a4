from __future__ import annotations

import logging
from typing import Any

from specflow.agents import AnalyzerAgent, ComplianceAuditorAgent
from specflow.errors import ConfigurationError, MalformedOutput
from specflow.handlers.registry import SessionHandle
from specflow.tasks import build_plan

logger = logging.getLogger(__name__)


async def init_handler(session: SessionHandle, payload: Any = None) -> None:
    ctx = session.context
    ctx.set("specPath", str(session.spec_path))
    ctx.set("branchName", session.branch_name)
    ctx.set("worktreePath", str(session.worktree_path))
    for key, default in (
        ("taskResults", {}),
        ("issueIds", {}),
        ("reviews", {}),
        ("minorIssues", []),
        ("phasesCompleted", []),
        ("acceptedBlocked", []),
        ("issuesCompleted", []),
    ):
        ctx.setdefault(key, default)


async def analyze_handler(session: SessionHandle, payload: Any = None) -> None:
    spec_path = session.spec_path
    try:
        spec_text = spec_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read spec file {spec_path}: {exc}") from exc

    agent = session.collaborators.agent("analyzer")
    try:
        result = await agent.run(
            AnalyzerAgent.instruction(spec_text),
            {"specPath": str(spec_path)},
            cwd=session.worktree_path,
        )
    except MalformedOutput as exc:
        logger.warning("Analyzer output rejected, planning with no tasks: %s", exc)
        result = agent.default_output()
    session.context.set("analysis", result.to_dict())


async def plan_handler(session: SessionHandle, payload: Any = None) -> None:
    ctx = session.context
    analysis = ctx.get("analysis")
    if not isinstance(analysis, dict):
        raise ConfigurationError('plan handler requires "analysis" in context')

    graph = build_plan(analysis.get("tasks") or [])
    ctx.set("tasks", graph.to_dicts())
    ctx.set("tasksCompleted", [])
    ctx.set("tasksPending", [task.id for task in graph])

    issues = session.collaborators.issues
    if issues is None:
        return
    issue_ids: dict[str, str] = dict(ctx.get("issueIds") or {})
    for task in graph:
        if task.id in issue_ids:
            continue
        # A crash mid-plan leaves issues on disk that the restored context never saw.
        issue = issues.find_by_context(sessionId=session.session_id, taskId=task.id)
        if issue is not None:
            logger.info("Reusing issue %s for task %s", issue.id, task.id)
        else:
            issue = issues.create(
                task.title,
                task.description,
                priority=task.estimated_complexity,
                labels=session.config.issues.labels,
                project=session.config.project.name,
                context={
                    "sessionId": session.session_id,
                    "taskId": task.id,
                    "specPath": str(session.spec_path),
                },
            )
        issue_ids[task.id] = issue.id
        ctx.set("issueIds", dict(issue_ids))


async def _audit_compliance(session: SessionHandle) -> dict[str, Any] | None:
    analysis = session.context.get("analysis") or {}
    criteria = [str(item) for item in analysis.get("acceptance_criteria") or []]
    if not criteria:
        return None
    agent = session.collaborators.agent("auditor")
    try:
        result = await agent.run(
            ComplianceAuditorAgent.instruction(criteria),
            {
                "acceptanceCriteria": criteria,
                "taskResults": session.context.get("taskResults") or {},
            },
            cwd=session.worktree_path,
        )
    except MalformedOutput as exc:
        logger.warning("Auditor output rejected, counting every criterion unmet: %s", exc)
        result = agent.default_output()
    return result.report(criteria)


async def verify_handler(session: SessionHandle, payload: Any = None) -> None:
    collaborators = session.collaborators
    if collaborators.tests is None:
        raise ConfigurationError("verify phase requires a test runner.")
    max_attempts = max(1, session.config.workflow.max_attempts)
    attempt = 0
    while True:
        attempt += 1
        result = await collaborators.tests.run(session.worktree_path)
        exit_code = int(result.get("exit_code", 1))
        if exit_code == 0 or attempt >= max_attempts:
            break
        logger.warning(
            "Test run %s/%s exited with %s, running again", attempt, max_attempts, exit_code
        )

    dirty: list[str] = []
    if collaborators.vcs is not None:
        dirty = collaborators.vcs.dirty_paths(session.worktree_path)
    verification: dict[str, Any] = {
        "passed": False,
        "exitCode": exit_code,
        "attempts": attempt,
        "dirtyPaths": dirty,
        "stdoutTail": str(result.get("stdout_tail", "")),
        "stderrTail": str(result.get("stderr_tail", "")),
    }
    compliance = None
    if exit_code == 0 and not dirty:
        compliance = await _audit_compliance(session)
        if compliance is not None:
            verification["compliance"] = compliance
    verification["passed"] = (
        exit_code == 0 and not dirty and (compliance is None or compliance["status"] == "complete")
    )
    session.context.set("verification", verification)


def _pull_request_body(session: SessionHandle) -> str:
    lines = [f"Implements `{session.spec_path.name}`.", "", "Tasks:"]
    results = session.context.get("taskResults") or {}
    for task in session.context.get("tasks") or []:
        summary = (results.get(task["id"]) or {}).get("summary", "")
        line = f"- {task['id']}: {task['title']}"
        lines.append(f"{line} ({summary})" if summary else line)
    analysis = session.context.get("analysis") or {}
    checklist = analysis.get("manual_testing_checklist") or []
    if checklist:
        lines.extend(["", "Manual testing:"])
        lines.extend(f"- [ ] {item}" for item in checklist)
    minor = session.context.get("minorIssues") or []
    if minor:
        lines.extend(["", f"Minor review findings left open: {len(minor)}"])
    return "\n".join(lines)


async def publish_handler(session: SessionHandle, payload: Any = None) -> None:
    ctx = session.context
    collaborators = session.collaborators
    if collaborators.vcs is None:
        raise ConfigurationError("publish phase requires a version control provider.")

    if not ctx.get("pullRequest"):
        await collaborators.vcs.push(session.branch_name, cwd=session.worktree_path)
        pull_request = await collaborators.vcs.create_pull_request(
            f"specflow: {session.spec_path.stem}",
            _pull_request_body(session),
            session.config.workflow.base_branch,
            session.branch_name,
            draft=session.config.workflow.draft_pull_requests,
            cwd=session.worktree_path,
        )
        ctx.set("pullRequest", pull_request)
        logger.info("Opened pull request %s", pull_request.get("url"))

    issue_ids = list((ctx.get("issueIds") or {}).values())
    done: list[str] = list(ctx.get("issuesCompleted") or [])
    remaining = [issue_id for issue_id in issue_ids if issue_id not in done]
    if remaining and collaborators.issues is not None:
        done.extend(collaborators.issues.mark_issues_complete(remaining))
    ctx.set("issuesCompleted", done)
