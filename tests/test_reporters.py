import asyncio
import logging

import pytest

from conftest import Workbench
from specflow.errors import ConfigurationError
from specflow.handlers import SessionHandle
from specflow.reporters import (
    LogReporter,
    PullRequestCommentReporter,
    WorkflowReporter,
    build_reporters,
)
from specflow.state.audit import AuditEntry


class RecordingReporter(WorkflowReporter):
    name = "recording"

    def __init__(self) -> None:
        self.seen: list[tuple[str, str, str]] = []

    def on_audit_entry(self, session: SessionHandle, entry: AuditEntry) -> None:
        self.seen.append((session.session_id, entry.step, entry.status))


class BrokenReporter(WorkflowReporter):
    name = "broken"

    def on_audit_entry(self, session: SessionHandle, entry: AuditEntry) -> None:
        raise RuntimeError("comment API unavailable")


def test_reporters_see_every_journaled_entry(bench: Workbench) -> None:
    recorder = RecordingReporter()
    bench.reporters = [recorder]
    manager = bench.manager()

    result = asyncio.run(manager.start(bench.spec_path))

    journal = [
        (result.session_id, entry.step, entry.status)
        for entry in manager.store.audit_log(result.session_id).read_all()
    ]
    assert recorder.seen == journal
    assert recorder.seen[-1] == (result.session_id, "complete", "completed")


def test_failing_reporter_never_blocks_the_run(
    bench: Workbench, caplog: pytest.LogCaptureFixture
) -> None:
    recorder = RecordingReporter()
    bench.reporters = [BrokenReporter(), recorder]

    with caplog.at_level(logging.WARNING, logger="specflow.reporters"):
        result = asyncio.run(bench.manager().start(bench.spec_path))

    assert result.status == "completed"
    assert recorder.seen[-1][1:] == ("complete", "completed")
    assert "Reporter broken failed" in caplog.text


def test_pull_request_comment_posted_when_run_completes(bench: Workbench) -> None:
    bench.reporters = [PullRequestCommentReporter()]

    result = asyncio.run(bench.manager().start(bench.spec_path))

    assert len(bench.vcs.comments) == 1
    number, body = bench.vcs.comments[0]
    assert number == 7
    assert f"`{result.session_id}`: completed" in body
    assert "Tasks completed: 3/3" in body
    assert "- [x] T2: Second" in body


def test_pull_request_comment_skipped_without_a_pull_request(bench: Workbench) -> None:
    bench.reporters = [PullRequestCommentReporter()]

    asyncio.run(bench.manager().start(bench.spec_path, dry_run=True))

    assert bench.vcs.comments == []


def test_build_reporters_by_name() -> None:
    reporters = build_reporters(["log", "pr-comment"])

    assert [type(reporter) for reporter in reporters] == [LogReporter, PullRequestCommentReporter]
    assert build_reporters([]) == []
    with pytest.raises(ConfigurationError, match="Unknown reporter 'slack'"):
        build_reporters(["slack"])
