from collections import Counter
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from specflow.agents import (
    AnalyzerAgent,
    ComplianceAuditorAgent,
    FixerAgent,
    ImplementerAgent,
    ReviewerAgent,
)
from specflow.backends.base import AgentBackend, AgentMessage, AgentRequest, result_message
from specflow.config import SpecflowConfig
from specflow.handlers import Collaborators
from specflow.issues import MarkdownIssueStore
from specflow.reporters import WorkflowReporter
from specflow.session import SessionManager

NO_RESULT = object()


def three_independent_tasks() -> dict[str, Any]:
    return {
        "summary": "three tasks",
        "tasks": [
            {"id": "T1", "title": "First", "description": "one", "dependencies": []},
            {"id": "T2", "title": "Second", "description": "two", "dependencies": []},
            {"id": "T3", "title": "Third", "description": "three", "dependencies": []},
        ],
    }


class ScriptedBackend(AgentBackend):
    """Answers each role from a script; records every request it receives."""

    def __init__(self, analysis: Any = None) -> None:
        self.analysis = analysis if analysis is not None else three_independent_tasks()
        self.calls: Counter[str] = Counter()
        self.requests: list[AgentRequest] = []
        self.review: Callable[[AgentRequest], Any] = lambda request: {
            "approved": True,
            "issues": [],
        }
        self.fix: Callable[[AgentRequest], Any] = lambda request: {"fixed": True}
        self.audit: Callable[[AgentRequest], Any] = lambda request: {
            "criteria": [
                {"criterion": criterion, "met": True}
                for criterion in request.context["acceptanceCriteria"]
            ]
        }
        self.implement: Callable[[AgentRequest], Any] = lambda request: {
            "summary": f"implemented {request.context['task']['id']}",
            "filesChanged": [f"src/{request.context['task']['id'].lower()}.py"],
        }

    def implemented_ids(self) -> list[str]:
        return [
            request.context["task"]["id"]
            for request in self.requests
            if request.role == "implementer"
        ]

    def _respond(self, request: AgentRequest) -> Any:
        if request.role == "analyzer":
            return self.analysis
        if request.role == "implementer":
            return self.implement(request)
        if request.role == "reviewer":
            return self.review(request)
        if request.role == "auditor":
            return self.audit(request)
        return self.fix(request)

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        self.calls[request.role] += 1
        self.requests.append(request)
        response = self._respond(request)
        if isinstance(response, Exception):
            raise response
        yield AgentMessage(type="assistant", content=f"{request.role} working")
        if response is NO_RESULT:
            return
        if isinstance(response, AgentMessage):
            yield response
            return
        yield result_message(response)


class FakeVersionControl:
    def __init__(self) -> None:
        self.pushed: list[str] = []
        self.pull_requests: list[dict[str, Any]] = []
        self.dirty: list[str] = []
        self.worktrees: list[tuple[str, Path, str]] = []
        self.branches: list[str] = []
        self.comments: list[tuple[int, str]] = []

    def current_branch(self, cwd: Path | None = None) -> str:
        return "main"

    def dirty_paths(self, cwd: Path | None = None) -> list[str]:
        return list(self.dirty)

    def create_branch(self, branch: str, cwd: Path | None = None) -> None:
        self.branches.append(branch)

    def create_worktree(self, branch: str, path: Path, base: str) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append((branch, path, base))
        return path

    async def push(self, branch: str, cwd: Path | None = None) -> None:
        self.pushed.append(branch)

    async def create_pull_request(
        self,
        title: str,
        body: str,
        base: str,
        head: str,
        *,
        draft: bool = False,
        cwd: Path | None = None,
    ) -> dict[str, Any]:
        number = len(self.pull_requests) + 7
        payload = {"url": f"https://github.com/acme/widgets/pull/{number}", "number": number}
        self.pull_requests.append({"title": title, "body": body, "base": base, "head": head})
        return payload

    def comment_on_pull_request(self, number: int, body: str, *, cwd: Path | None = None) -> None:
        self.comments.append((number, body))


class FakeTestRunner:
    def __init__(self, exit_codes: list[int] | None = None) -> None:
        self.exit_codes = list(exit_codes or [0])
        self.runs = 0

    async def run(self, cwd: Path) -> dict[str, Any]:
        code = self.exit_codes[min(self.runs, len(self.exit_codes) - 1)]
        self.runs += 1
        return {"exit_code": code, "stdout_tail": "", "stderr_tail": "1 failed" if code else ""}


class Workbench:
    """A repository directory wired to scripted collaborators."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.spec_path = root / "docs" / "feature.md"
        self.spec_path.parent.mkdir(parents=True, exist_ok=True)
        self.spec_path.write_text("# Feature\n\nBuild the widget.\n", encoding="utf-8")
        self.config = SpecflowConfig.default()
        self.config.project.name = "widgets"
        self.config.workflow.isolation = "none"
        self.backend = ScriptedBackend()
        self.vcs = FakeVersionControl()
        self.tests = FakeTestRunner()
        self.issues = MarkdownIssueStore(root / self.config.issues.directory, project="widgets")
        self.reporters: list[WorkflowReporter] = []

    def collaborators(self) -> Collaborators:
        return Collaborators(
            agents={
                "analyzer": AnalyzerAgent(self.backend),
                "implementer": ImplementerAgent(self.backend),
                "reviewer": ReviewerAgent(self.backend),
                "fixer": FixerAgent(self.backend),
                "auditor": ComplianceAuditorAgent(self.backend),
            },
            issues=self.issues,
            vcs=self.vcs,  # type: ignore[arg-type]
            tests=self.tests,  # type: ignore[arg-type]
            reporters=list(self.reporters),
        )

    def manager(self) -> SessionManager:
        return SessionManager(self.root, self.config, self.collaborators())


@pytest.fixture
def bench(tmp_path: Path) -> Workbench:
    return Workbench(tmp_path)
