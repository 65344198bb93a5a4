"""Structured output contracts for each agent role.

Each result type carries the JSON schema handed to the backend and a
``from_payload`` parser that raises ``MalformedOutput`` when the agent's
structured output does not match it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from specflow.errors import MalformedOutput

Severity = Literal["critical", "important", "minor"]
Complexity = Literal["low", "medium", "high"]
SEVERITIES = ("critical", "important", "minor")
COMPLEXITIES = ("low", "medium", "high")

_STRING_LIST = {"type": "array", "items": {"type": "string"}}


def _require_mapping(payload: Any, role: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedOutput(f"{role} output must be a JSON object.", role=role, raw=payload)
    return payload


def _string_list(value: Any, *, role: str, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedOutput(f"{role} output field '{key}' must be a list.", role=role, raw=value)
    return [str(item) for item in value]


@dataclass(slots=True)
class PlannedTask:
    title: str
    description: str = ""
    id: str | None = None
    requirements: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    estimated_complexity: Complexity = "medium"


@dataclass(slots=True)
class AnalysisResult:
    summary: str = ""
    tasks: list[PlannedTask] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    e2e_test_features: list[str] = field(default_factory=list)
    manual_testing_checklist: list[str] = field(default_factory=list)

    SCHEMA = {
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "tasks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "requirements": _STRING_LIST,
                        "dependencies": _STRING_LIST,
                        "estimatedComplexity": {"type": "string", "enum": list(COMPLEXITIES)},
                    },
                    "required": ["title", "description"],
                },
            },
            "acceptanceCriteria": _STRING_LIST,
            "e2eTestFeatures": _STRING_LIST,
            "manualTestingChecklist": _STRING_LIST,
        },
        "required": ["tasks"],
    }

    @classmethod
    def from_payload(cls, payload: Any) -> AnalysisResult:
        data = _require_mapping(payload, "analyzer")
        raw_tasks = data.get("tasks")
        if not isinstance(raw_tasks, list):
            raise MalformedOutput("analyzer output is missing 'tasks'.", role="analyzer", raw=payload)
        tasks: list[PlannedTask] = []
        for item in raw_tasks:
            entry = _require_mapping(item, "analyzer")
            title = str(entry.get("title") or "").strip()
            if not title:
                raise MalformedOutput("analyzer task is missing a title.", role="analyzer", raw=item)
            complexity = str(
                entry.get("estimatedComplexity") or entry.get("estimated_complexity") or "medium"
            ).lower()
            raw_id = entry.get("id")
            tasks.append(
                PlannedTask(
                    id=str(raw_id).strip() if raw_id else None,
                    title=title,
                    description=str(entry.get("description") or ""),
                    requirements=_string_list(
                        entry.get("requirements"), role="analyzer", key="requirements"
                    ),
                    dependencies=_string_list(
                        entry.get("dependencies"), role="analyzer", key="dependencies"
                    ),
                    estimated_complexity=complexity if complexity in COMPLEXITIES else "medium",
                )
            )
        return cls(
            summary=str(data.get("summary") or ""),
            tasks=tasks,
            acceptance_criteria=_string_list(
                data.get("acceptanceCriteria"), role="analyzer", key="acceptanceCriteria"
            ),
            e2e_test_features=_string_list(
                data.get("e2eTestFeatures"), role="analyzer", key="e2eTestFeatures"
            ),
            manual_testing_checklist=_string_list(
                data.get("manualTestingChecklist"), role="analyzer", key="manualTestingChecklist"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ImplementationResult:
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)

    SCHEMA = {
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "filesChanged": _STRING_LIST,
        },
        "required": ["summary"],
    }

    @classmethod
    def from_payload(cls, payload: Any) -> ImplementationResult:
        data = _require_mapping(payload, "implementer")
        if "summary" not in data:
            raise MalformedOutput(
                "implementer output is missing 'summary'.", role="implementer", raw=payload
            )
        return cls(
            summary=str(data.get("summary") or ""),
            files_changed=_string_list(
                data.get("filesChanged", data.get("files_changed")),
                role="implementer",
                key="filesChanged",
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"summary": self.summary, "filesChanged": list(self.files_changed)}


@dataclass(slots=True)
class ReviewIssue:
    severity: Severity
    description: str
    file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"severity": self.severity, "description": self.description}
        if self.file:
            payload["file"] = self.file
        return payload


@dataclass(slots=True)
class ReviewResult:
    approved: bool = True
    issues: list[ReviewIssue] = field(default_factory=list)

    SCHEMA = {
        "type": "object",
        "properties": {
            "approved": {"type": "boolean"},
            "issues": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "severity": {"type": "string", "enum": list(SEVERITIES)},
                        "description": {"type": "string"},
                        "file": {"type": "string"},
                    },
                    "required": ["severity", "description"],
                },
            },
        },
        "required": ["approved", "issues"],
    }

    @classmethod
    def from_payload(cls, payload: Any) -> ReviewResult:
        data = _require_mapping(payload, "reviewer")
        approved = data.get("approved")
        raw_issues = data.get("issues", [])
        if not isinstance(approved, bool) or not isinstance(raw_issues, list):
            raise MalformedOutput(
                "reviewer output needs boolean 'approved' and list 'issues'.",
                role="reviewer",
                raw=payload,
            )
        issues: list[ReviewIssue] = []
        for item in raw_issues:
            entry = _require_mapping(item, "reviewer")
            severity = str(entry.get("severity") or "").lower()
            if severity not in SEVERITIES:
                raise MalformedOutput(
                    f"reviewer issue has unknown severity '{severity}'.", role="reviewer", raw=item
                )
            issues.append(
                ReviewIssue(
                    severity=severity,  # type: ignore[arg-type]
                    description=str(entry.get("description") or ""),
                    file=str(entry["file"]) if entry.get("file") else None,
                )
            )
        return cls(approved=approved, issues=issues)

    def by_severity(self, *severities: str) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity in severities]

    def to_dict(self) -> dict[str, Any]:
        return {"approved": self.approved, "issues": [issue.to_dict() for issue in self.issues]}


@dataclass(slots=True)
class FixResult:
    fixed: bool = False
    summary: str = ""

    SCHEMA = {
        "type": "object",
        "properties": {
            "fixed": {"type": "boolean"},
            "summary": {"type": "string"},
        },
        "required": ["fixed"],
    }

    @classmethod
    def from_payload(cls, payload: Any) -> FixResult:
        data = _require_mapping(payload, "fixer")
        fixed = data.get("fixed")
        if not isinstance(fixed, bool):
            raise MalformedOutput("fixer output needs boolean 'fixed'.", role="fixer", raw=payload)
        return cls(fixed=fixed, summary=str(data.get("summary") or ""))

    def to_dict(self) -> dict[str, Any]:
        return {"fixed": self.fixed, "summary": self.summary}


@dataclass(slots=True)
class CriterionCheck:
    criterion: str
    met: bool
    evidence: str = ""


def _normalize_criterion(text: str) -> str:
    return " ".join(text.split()).casefold()


@dataclass(slots=True)
class ComplianceResult:
    criteria: list[CriterionCheck] = field(default_factory=list)

    SCHEMA = {
        "type": "object",
        "properties": {
            "criteria": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "criterion": {"type": "string"},
                        "met": {"type": "boolean"},
                        "evidence": {"type": "string"},
                    },
                    "required": ["criterion", "met"],
                },
            },
        },
        "required": ["criteria"],
    }

    @classmethod
    def from_payload(cls, payload: Any) -> ComplianceResult:
        data = _require_mapping(payload, "auditor")
        raw_criteria = data.get("criteria")
        if not isinstance(raw_criteria, list):
            raise MalformedOutput("auditor output is missing 'criteria'.", role="auditor", raw=payload)
        checks: list[CriterionCheck] = []
        for item in raw_criteria:
            entry = _require_mapping(item, "auditor")
            if not isinstance(entry.get("met"), bool):
                raise MalformedOutput(
                    "auditor criterion needs boolean 'met'.", role="auditor", raw=item
                )
            checks.append(
                CriterionCheck(
                    criterion=str(entry.get("criterion") or ""),
                    met=entry["met"],
                    evidence=str(entry.get("evidence") or ""),
                )
            )
        return cls(criteria=checks)

    def report(self, expected: list[str]) -> dict[str, Any]:
        """Score ``expected`` criteria; any the auditor did not confirm count as unmet."""
        confirmed = {_normalize_criterion(check.criterion) for check in self.criteria if check.met}
        unmet = [item for item in expected if _normalize_criterion(item) not in confirmed]
        total = len(expected)
        completed = total - len(unmet)
        percentage = completed * 100 // total if total else 100
        return {
            "total": total,
            "completed": completed,
            "percentage": percentage,
            "status": "complete" if percentage == 100 else "incomplete",
            "unmet": unmet,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"criteria": [asdict(check) for check in self.criteria]}
