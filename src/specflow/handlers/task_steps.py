from __future__ import annotations

import logging
from typing import Any

from specflow.agents import FixerAgent, ImplementerAgent, ReviewerAgent
from specflow.errors import MalformedOutput
from specflow.handlers.registry import SessionHandle
from specflow.schemas import FixResult, ImplementationResult, ReviewResult

logger = logging.getLogger(__name__)


async def implement_handler(session: SessionHandle, payload: dict[str, Any]) -> ImplementationResult:
    task = payload["task"]
    agent = session.collaborators.agent("implementer")
    context = {
        "task": task,
        "dependencyResults": payload.get("dependencyResults") or {},
        "specPath": str(session.spec_path),
    }
    issue_id = payload.get("issueId")
    if issue_id:
        context["issueId"] = issue_id
    try:
        return await agent.run(
            ImplementerAgent.instruction(task["title"], task.get("description", "")),
            context,
            cwd=session.worktree_path,
        )
    except MalformedOutput as exc:
        logger.warning("Implementer output rejected for %s: %s", task["id"], exc)
        return agent.default_output()


async def review_handler(session: SessionHandle, payload: dict[str, Any]) -> ReviewResult:
    task = payload["task"]
    agent = session.collaborators.agent("reviewer")
    try:
        review = await agent.run(
            ReviewerAgent.instruction(task["title"]),
            {"task": task, "implementation": payload.get("implementation") or {}},
            cwd=session.worktree_path,
        )
    except MalformedOutput as exc:
        logger.warning("Reviewer output rejected for %s, treating as approved: %s", task["id"], exc)
        review = agent.default_output()
    reviews = dict(session.context.get("reviews") or {})
    reviews[task["id"]] = review.to_dict()
    session.context.set("reviews", reviews)
    return review


async def fix_handler(session: SessionHandle, payload: dict[str, Any]) -> FixResult:
    task = payload["task"]
    finding = payload["issue"]
    agent = session.collaborators.agent("fixer")
    try:
        return await agent.run(
            FixerAgent.instruction(finding["severity"], finding["description"]),
            {"task": task, "issue": finding, "attempt": payload.get("attempt", 1)},
            cwd=session.worktree_path,
        )
    except MalformedOutput as exc:
        logger.warning("Fixer output rejected for %s: %s", task["id"], exc)
        return agent.default_output()
