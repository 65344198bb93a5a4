import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import Workbench
from specflow.cli import cli
from specflow.config import load_config, save_config


@pytest.fixture
def runner(bench: Workbench, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.chdir(bench.root)
    monkeypatch.setattr(
        "specflow.cli._build_collaborators", lambda repo_root, config: bench.collaborators()
    )
    save_config(bench.root / "specflow.toml", bench.config)
    return CliRunner()


def _session_id(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Session: "):
            return line.split(": ", 1)[1]
    raise AssertionError("No session id in output")


def test_init_writes_config_and_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init", "--backend", "codex"])

    assert result.exit_code == 0
    assert "Backend: codex" in result.output
    config = load_config(tmp_path / "specflow.toml")
    assert config.agents.primary == "codex"
    assert (tmp_path / ".specflow" / "sessions").is_dir()
    assert (tmp_path / ".specflow" / "issues").is_dir()
    assert (tmp_path / ".specflow" / "prompts").is_dir()


def test_cli_full_lifecycle_commands(runner: CliRunner, bench: Workbench) -> None:
    run_result = runner.invoke(cli, ["run", "docs/feature.md"])
    assert run_result.exit_code == 0
    assert "Status: completed" in run_result.output
    session_id = _session_id(run_result.output)

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    report = json.loads(status_result.output)
    assert report["sessionId"] == session_id
    assert report["status"] == "completed"
    assert report["tasksCompleted"] == ["T1", "T2", "T3"]

    text_status = runner.invoke(cli, ["status", session_id])
    assert text_status.exit_code == 0
    assert "Phases completed: init, analyze, plan, execute, verify, publish" in text_status.output

    sessions_result = runner.invoke(cli, ["sessions"])
    assert session_id in sessions_result.output

    checkpoints_result = runner.invoke(cli, ["checkpoints", session_id])
    assert checkpoints_result.exit_code == 0
    assert "chk-000001-" in checkpoints_result.output

    issues_result = runner.invoke(cli, ["issues", "list", "--format", "minimal"])
    assert issues_result.exit_code == 0
    issues = json.loads(issues_result.output)
    assert [set(issue) for issue in issues] == [{"id", "title", "status"}] * 3
    assert {issue["status"] for issue in issues} == {"closed"}


def test_paused_run_prints_resume_hint(runner: CliRunner, bench: Workbench) -> None:
    bench.tests.exit_codes = [1, 1, 0]

    paused = runner.invoke(cli, ["run", "docs/feature.md"])

    assert paused.exit_code == 0
    session_id = _session_id(paused.output)
    assert "Status: paused" in paused.output
    assert "exit code 1" in paused.output
    assert f"Resume with: specflow run --resume {session_id}" in paused.output

    resumed = runner.invoke(cli, ["run", "--resume", session_id])
    assert resumed.exit_code == 0
    assert "Status: completed" in resumed.output


def test_failed_run_exits_non_zero(runner: CliRunner, bench: Workbench) -> None:
    bench.backend.analysis = {"tasks": []}

    result = runner.invoke(cli, ["run", "docs/feature.md"])

    assert result.exit_code == 1
    assert "zero tasks" in result.output
    assert "audit.jsonl" in result.output


def test_dry_run_stops_after_plan(runner: CliRunner, bench: Workbench) -> None:
    result = runner.invoke(cli, ["run", "docs/feature.md", "--dry-run"])

    assert result.exit_code == 0
    assert "Phases: init, analyze, plan" in result.output
    assert bench.backend.calls["implementer"] == 0


def test_pause_command_writes_marker(runner: CliRunner, bench: Workbench) -> None:
    bench.tests.exit_codes = [1]
    session_id = _session_id(runner.invoke(cli, ["run", "docs/feature.md"]).output)

    result = runner.invoke(cli, ["pause", session_id])

    assert result.exit_code == 0
    assert (bench.root / ".specflow" / "sessions" / session_id / "pause.request").exists()


def test_usage_and_lookup_errors(runner: CliRunner) -> None:
    no_args = runner.invoke(cli, ["run"])
    assert no_args.exit_code == 2

    conflicting = runner.invoke(cli, ["run", "--resume", "wf-x", "--dry-run"])
    assert conflicting.exit_code == 2

    missing = runner.invoke(cli, ["status"])
    assert missing.exit_code == 1
    assert "Session not found" in missing.output

    empty = runner.invoke(cli, ["sessions"])
    assert "No sessions found." in empty.output
