import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from specflow.agents import (
    ComplianceAuditorAgent,
    FixerAgent,
    ImplementerAgent,
    ReviewerAgent,
    SpecialistAgent,
)
from specflow.backends.base import (
    AgentBackend,
    AgentMessage,
    AgentRequest,
    BackendExecutionError,
    result_message,
)
from specflow.errors import AgentInvocationError, ConfigurationError, MalformedOutput
from specflow.schemas import AnalysisResult, ComplianceResult, ReviewResult


class FakeBackend(AgentBackend):
    def __init__(self, messages: list[AgentMessage]) -> None:
        self.messages = messages
        self.last_request: AgentRequest | None = None

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        self.last_request = request
        for message in self.messages:
            yield message


def test_run_parses_structured_output_into_result_type() -> None:
    backend = FakeBackend(
        [
            AgentMessage(type="assistant", content="looking"),
            result_message(
                {"approved": False, "issues": [{"severity": "important", "description": "leak"}]}
            ),
        ]
    )
    agent = ReviewerAgent(backend, model="claude-sonnet-4-5")

    review = asyncio.run(agent.run("review it", {"task": {"id": "T1"}}, cwd=Path("/repo")))

    assert isinstance(review, ReviewResult)
    assert [issue.severity for issue in review.by_severity("critical", "important")] == ["important"]
    request = backend.last_request
    assert request.role == "reviewer"
    assert request.model == "claude-sonnet-4-5"
    assert request.cwd == Path("/repo")
    assert request.output_schema == ReviewResult.SCHEMA
    assert request.allowed_tools == ["Bash", "Glob", "Grep", "Read"]


def test_error_result_raises_invocation_error() -> None:
    backend = FakeBackend([result_message(subtype="error_max_turns", errors=["turn limit"])])
    agent = FixerAgent(backend)

    with pytest.raises(AgentInvocationError, match="error_max_turns: turn limit") as excinfo:
        asyncio.run(agent.run("fix", {}))

    assert excinfo.value.retriable is True
    assert excinfo.value.role == "fixer"


def test_stream_without_result_raises_invocation_error() -> None:
    agent = ImplementerAgent(FakeBackend([AgentMessage(type="assistant", content="hmm")]))

    with pytest.raises(AgentInvocationError, match="without a result"):
        asyncio.run(agent.run("implement", {}))


def test_missing_or_mismatched_output_is_malformed() -> None:
    empty = FixerAgent(FakeBackend([result_message(None)]))
    wrong = FixerAgent(FakeBackend([result_message({"fixed": "yes"})]))

    with pytest.raises(MalformedOutput):
        asyncio.run(empty.run("fix", {}))
    with pytest.raises(MalformedOutput, match="boolean 'fixed'"):
        asyncio.run(wrong.run("fix", {}))


def test_default_outputs_per_role() -> None:
    backend = FakeBackend([])

    assert ReviewerAgent(backend).default_output().approved is True
    assert FixerAgent(backend).default_output().fixed is False
    assert ImplementerAgent(backend).default_output().summary == ""


def test_prompt_file_overrides_builtin_prompt(tmp_path: Path) -> None:
    (tmp_path / "reviewer.md").write_text("Review like a hawk.\n", encoding="utf-8")

    reviewer = ReviewerAgent(FakeBackend([]), prompts_dir=tmp_path)
    fixer = FixerAgent(FakeBackend([]), prompts_dir=tmp_path)

    assert reviewer.system_prompt == "Review like a hawk."
    assert fixer.system_prompt == FixerAgent.fallback_prompt


def test_unknown_tools_are_rejected() -> None:
    class RogueAgent(SpecialistAgent):
        role = "rogue"
        allowed_tools = ("Read", "WebFetch")
        result_type = ReviewResult

    with pytest.raises(ConfigurationError, match="WebFetch"):
        RogueAgent(FakeBackend([])).build_request("go", {})


def test_analysis_payload_validation() -> None:
    parsed = AnalysisResult.from_payload(
        {
            "summary": "two tasks",
            "tasks": [
                {"title": "Parser", "description": "parse", "estimatedComplexity": "HIGH"},
                {"id": "T2", "title": "Renderer", "dependencies": ["task-001"]},
            ],
        }
    )

    assert parsed.tasks[0].id is None
    assert parsed.tasks[0].estimated_complexity == "high"
    assert parsed.tasks[1].dependencies == ["task-001"]
    with pytest.raises(MalformedOutput):
        AnalysisResult.from_payload({"tasks": [{"description": "untitled"}]})
    with pytest.raises(MalformedOutput):
        AnalysisResult.from_payload({"summary": "no tasks key"})


def test_review_rejects_unknown_severity() -> None:
    with pytest.raises(MalformedOutput, match="unknown severity"):
        ReviewResult.from_payload(
            {"approved": False, "issues": [{"severity": "blocker", "description": "x"}]}
        )


def test_context_is_rendered_into_prompt() -> None:
    backend = FakeBackend([result_message({"summary": "done"})])
    agent = ImplementerAgent(backend)

    result: Any = asyncio.run(agent.run("implement T1", {"task": {"id": "T1"}}))

    assert result.summary == "done"
    rendered = backend.last_request.rendered_prompt()
    assert rendered.startswith("implement T1")
    assert '"id": "T1"' in rendered


class ExitingBackend(FakeBackend):
    """Yields its messages, then fails the way a CLI backend does on a bad exit code."""

    def __init__(self, messages: list[AgentMessage]) -> None:
        super().__init__(messages)
        self.closed = False

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        try:
            for message in self.messages:
                yield message
            raise BackendExecutionError(
                "Claude backend failed with exit code 3: crashed", backend="fake", exit_code=3
            )
        finally:
            self.closed = True


def test_exit_failure_after_result_is_not_ignored() -> None:
    backend = ExitingBackend([result_message({"summary": "done"})])
    agent = ImplementerAgent(backend)

    with pytest.raises(BackendExecutionError, match="exit code 3") as excinfo:
        asyncio.run(agent.run("implement", {}))

    assert excinfo.value.retriable is True
    assert backend.closed is True


def test_error_result_closes_the_stream() -> None:
    backend = ExitingBackend([result_message(subtype="error_max_turns", errors=["turn limit"])])

    with pytest.raises(AgentInvocationError, match="turn limit"):
        asyncio.run(FixerAgent(backend).run("fix", {}))

    assert backend.closed is True


def test_analysis_carries_acceptance_criteria() -> None:
    parsed = AnalysisResult.from_payload(
        {
            "tasks": [{"title": "Parser", "description": "parse"}],
            "acceptanceCriteria": ["Parses input"],
            "e2eTestFeatures": ["round trip through the CLI"],
            "manualTestingChecklist": ["Open the widget"],
        }
    )

    assert parsed.acceptance_criteria == ["Parses input"]
    assert parsed.to_dict()["e2e_test_features"] == ["round trip through the CLI"]
    assert parsed.manual_testing_checklist == ["Open the widget"]
    assert AnalysisResult.from_payload({"tasks": []}).acceptance_criteria == []
    with pytest.raises(MalformedOutput, match="acceptanceCriteria"):
        AnalysisResult.from_payload({"tasks": [], "acceptanceCriteria": "all of them"})


def test_compliance_report_scores_expected_criteria() -> None:
    backend = FakeBackend(
        [
            result_message(
                {
                    "criteria": [
                        {"criterion": "Parses input", "met": True},
                        {"criterion": "Handles errors", "met": False},
                        {"criterion": "Something extra", "met": True},
                    ]
                }
            )
        ]
    )
    agent = ComplianceAuditorAgent(backend)
    expected = ["Parses input", "Handles errors", "Logs progress"]

    result = asyncio.run(agent.run(ComplianceAuditorAgent.instruction(expected), {}))
    report = result.report(expected)

    assert report == {
        "total": 3,
        "completed": 1,
        "percentage": 33,
        "status": "incomplete",
        "unmet": ["Handles errors", "Logs progress"],
    }
    assert "3. Logs progress" in backend.last_request.prompt
    assert backend.last_request.output_schema == ComplianceResult.SCHEMA
    assert ComplianceResult().report([])["status"] == "complete"
    with pytest.raises(MalformedOutput, match="boolean 'met'"):
        ComplianceResult.from_payload({"criteria": [{"criterion": "x", "met": "yes"}]})
