from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import yaml

from specflow.errors import ConfigurationError, SpecflowError

logger = logging.getLogger(__name__)

IssueStatus = Literal["open", "in_progress", "closed", "cancelled"]
IssuePriority = Literal["low", "medium", "high", "critical"]
IssueFormat = Literal["full", "summary", "minimal"]

ISSUE_STATUSES = ("open", "in_progress", "closed", "cancelled")
ISSUE_PRIORITIES = ("low", "medium", "high", "critical")
ISSUE_FORMATS = ("full", "summary", "minimal")
FRONT_MATTER_PATTERN = re.compile(r"\A---\n(.*?)\n---\n?(.*)\Z", re.DOTALL)
ISSUE_FILE_PATTERN = re.compile(r"^(\d{6})\.md$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class IssueNotFound(SpecflowError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Issue not found: {issue_id}")
        self.issue_id = issue_id


@dataclass(slots=True)
class Issue:
    id: str
    title: str
    description: str = ""
    type: str = "issue"
    status: IssueStatus = "open"
    priority: IssuePriority = "medium"
    labels: list[str] = field(default_factory=list)
    assignee: str | None = None
    project: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    closed_at: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def front_matter(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "status": self.status,
            "priority": self.priority,
            "labels": list(self.labels),
            "assignee": self.assignee,
            "project": self.project,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "closedAt": self.closed_at,
            "context": self.context or None,
        }

    @classmethod
    def from_front_matter(cls, data: dict[str, Any], description: str) -> Issue:
        context = data.get("context")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            description=description.strip(),
            type=str(data.get("type") or "issue"),
            status=data.get("status") if data.get("status") in ISSUE_STATUSES else "open",
            priority=data.get("priority") if data.get("priority") in ISSUE_PRIORITIES else "medium",
            labels=[str(label) for label in data.get("labels") or []],
            assignee=data.get("assignee"),
            project=data.get("project"),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
            closed_at=data.get("closedAt"),
            context=context if isinstance(context, dict) else {},
        )


def serialize_issue(issue: Issue, format: IssueFormat = "summary") -> dict[str, Any]:
    """Shape an issue for output; minimal < summary < full."""
    if format not in ISSUE_FORMATS:
        raise ConfigurationError(f"Unknown issue format: {format}")
    if format == "minimal":
        return {"id": issue.id, "title": issue.title, "status": issue.status}
    payload: dict[str, Any] = {
        "id": issue.id,
        "title": issue.title,
        "type": issue.type,
        "status": issue.status,
        "priority": issue.priority,
        "labels": list(issue.labels),
        "assignee": issue.assignee,
        "project": issue.project,
    }
    if format == "summary":
        return payload
    payload.update(
        {
            "description": issue.description,
            "createdAt": issue.created_at,
            "updatedAt": issue.updated_at,
            "closedAt": issue.closed_at,
            "context": issue.context or None,
        }
    )
    return payload


@dataclass(slots=True)
class IssueFilters:
    status: list[str] | None = None
    priority: list[str] | None = None
    labels: list[str] | None = None
    assignee: str | None = None
    project: str | None = None

    def matches(self, issue: Issue) -> bool:
        if self.status and issue.status not in self.status:
            return False
        if self.priority and issue.priority not in self.priority:
            return False
        if self.labels and not set(self.labels).issubset(issue.labels):
            return False
        if self.assignee and issue.assignee != self.assignee:
            return False
        if self.project and issue.project != self.project:
            return False
        return True


class MarkdownIssueStore:
    """Issues kept as ``<directory>/<NNNNNN>.md`` with YAML front matter."""

    def __init__(self, directory: Path, *, project: str | None = None) -> None:
        self.directory = directory
        self.project = project

    def _path(self, issue_id: str) -> Path:
        return self.directory / f"{issue_id}.md"

    def _next_id(self) -> str:
        highest = 0
        if self.directory.exists():
            for path in self.directory.iterdir():
                match = ISSUE_FILE_PATTERN.match(path.name)
                if match:
                    highest = max(highest, int(match.group(1)))
        return f"{highest + 1:06d}"

    def _write(self, issue: Issue) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        header = yaml.safe_dump(issue.front_matter(), sort_keys=False, allow_unicode=True)
        body = f"---\n{header}---\n\n{issue.description.strip()}\n"
        temp_path = self._path(issue.id).with_suffix(".md.tmp")
        temp_path.write_text(body, encoding="utf-8")
        temp_path.replace(self._path(issue.id))

    def _read(self, path: Path) -> Issue:
        raw = path.read_text(encoding="utf-8")
        match = FRONT_MATTER_PATTERN.match(raw)
        if match is None:
            raise SpecflowError(f"Issue file {path.name} has no front matter.")
        try:
            data = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            raise SpecflowError(f"Issue file {path.name} has invalid front matter: {exc}") from exc
        if not isinstance(data, dict) or "id" not in data:
            raise SpecflowError(f"Issue file {path.name} front matter is missing an id.")
        return Issue.from_front_matter(data, match.group(2))

    def create(
        self,
        title: str,
        description: str = "",
        *,
        priority: IssuePriority = "medium",
        labels: Iterable[str] = (),
        assignee: str | None = None,
        project: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Issue:
        issue = Issue(
            id=self._next_id(),
            title=title,
            description=description,
            priority=priority if priority in ISSUE_PRIORITIES else "medium",
            labels=list(labels),
            assignee=assignee,
            project=project or self.project,
            context=dict(context or {}),
        )
        self._write(issue)
        logger.info("Created issue %s: %s", issue.id, issue.title)
        return issue

    def _all(self) -> list[Issue]:
        if not self.directory.exists():
            return []
        return [
            self._read(path)
            for path in sorted(self.directory.iterdir())
            if ISSUE_FILE_PATTERN.match(path.name)
        ]

    def find_by_context(self, **context: Any) -> Issue | None:
        """First issue whose context carries every given key/value pair."""
        for issue in self._all():
            if all(issue.context.get(key) == value for key, value in context.items()):
                return issue
        return None

    def get(self, issue_id: str) -> Issue:
        path = self._path(issue_id)
        if not path.exists():
            raise IssueNotFound(issue_id)
        return self._read(path)

    def list(
        self,
        filters: IssueFilters | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Issue]:
        active = filters or IssueFilters()
        matched = [issue for issue in self._all() if active.matches(issue)]
        return matched[offset : offset + limit]

    def list_serialized(
        self,
        filters: IssueFilters | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
        format: IssueFormat = "summary",
    ) -> list[dict[str, Any]]:
        return [
            serialize_issue(issue, format)
            for issue in self.list(filters, limit=limit, offset=offset)
        ]

    def update(self, issue_id: str, **changes: Any) -> Issue:
        issue = self.get(issue_id)
        for key, value in changes.items():
            if key not in Issue.__dataclass_fields__ or key in {"id", "created_at"}:
                raise ConfigurationError(f"Issue field cannot be updated: {key}")
            setattr(issue, key, value)
        if issue.status not in ISSUE_STATUSES:
            raise ConfigurationError(f"Unsupported issue status: {issue.status}")
        issue.updated_at = _utcnow_iso()
        if issue.status in {"closed", "cancelled"} and issue.closed_at is None:
            issue.closed_at = issue.updated_at
        self._write(issue)
        return issue

    def mark_complete(self, issue_id: str) -> Issue:
        issue = self.get(issue_id)
        if issue.status == "closed":
            return issue
        return self.update(issue_id, status="closed")

    def mark_issues_complete(self, issue_ids: Iterable[str]) -> list[str]:
        completed: list[str] = []
        for issue_id in issue_ids:
            self.mark_complete(issue_id)
            completed.append(issue_id)
        return completed
