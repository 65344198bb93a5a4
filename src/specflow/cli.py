from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from specflow.agents import (
    AnalyzerAgent,
    ComplianceAuditorAgent,
    FixerAgent,
    ImplementerAgent,
    ReviewerAgent,
)
from specflow.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from specflow.config import CONFIG_FILENAME, BackendName, SpecflowConfig, load_config, save_config
from specflow.engine import WorkflowResult
from specflow.errors import SpecflowError
from specflow.handlers import Collaborators
from specflow.issues import ISSUE_FORMATS, IssueFilters, MarkdownIssueStore
from specflow.reporters import build_reporters
from specflow.session import SessionManager, SessionStatusReport
from specflow.vcs import GitVersionControl, ShellTestRunner

logger = logging.getLogger(__name__)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event %s", event)


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, event_hook=_log_backend_event)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root, event_hook=_log_backend_event)


def _build_backend(config: SpecflowConfig, repo_root: Path) -> ResilientBackend:
    agents = config.agents
    policy = RetryPolicy(
        max_retries=max(0, int(agents.max_retries)),
        backoff_seconds=max(0.0, float(agents.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(agents.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=agents.primary,
        primary_backend=_build_single_backend(agents.primary, repo_root),
        fallback_name=agents.fallback,
        fallback_backend=_build_single_backend(agents.fallback, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _build_collaborators(repo_root: Path, config: SpecflowConfig) -> Collaborators:
    backend = _build_backend(config, repo_root)
    prompts_dir = repo_root / config.agents.prompts_dir
    options = {
        "model": config.agents.model,
        "permission_mode": config.agents.permission_mode,
        "prompts_dir": prompts_dir,
    }
    return Collaborators(
        agents={
            "analyzer": AnalyzerAgent(backend, **options),
            "implementer": ImplementerAgent(backend, **options),
            "reviewer": ReviewerAgent(backend, **options),
            "fixer": FixerAgent(backend, **options),
            "auditor": ComplianceAuditorAgent(backend, **options),
        },
        issues=MarkdownIssueStore(repo_root / config.issues.directory, project=config.project.name),
        vcs=GitVersionControl(repo_root, remote=config.workflow.remote),
        tests=ShellTestRunner(config.project.test_command),
        reporters=build_reporters(config.workflow.reporters),
    )


def _load_manager(repo_root: Path, config_value: str) -> SessionManager:
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        collaborators = _build_collaborators(repo_root, config)
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    return SessionManager(repo_root, config, collaborators)


def _report_result(result: WorkflowResult, audit_path: Path) -> None:
    click.echo(f"Session: {result.session_id}")
    click.echo(f"Status: {result.status}")
    if result.phases_completed:
        click.echo(f"Phases: {', '.join(result.phases_completed)}")
    if result.status == "paused":
        reason = result.blocker.reason if result.blocker else "unknown"
        click.echo(f"Blocked: {reason}")
        click.echo(f"Resume with: specflow run --resume {result.session_id}")
        return
    if result.status == "failed":
        click.echo(f"Error: {result.error}", err=True)
        click.echo(f"Audit trail: {audit_path}", err=True)
        sys.exit(1)


def _print_status(report: SessionStatusReport) -> None:
    click.echo(f"Session: {report.session_id}")
    click.echo(f"Status: {report.status}")
    click.echo(f"Active step: {report.active_step}")
    click.echo(f"Phases completed: {', '.join(report.phases_completed) or '-'}")
    click.echo(
        f"Tasks: {len(report.tasks_completed)} completed, {len(report.tasks_pending)} pending"
    )
    click.echo(f"Duration: {report.duration}")
    if report.last_activity:
        click.echo(f"Last activity: {report.last_activity}")
    if report.blocker:
        click.echo(f"Blocker: {report.blocker.get('reason')}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """specflow CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option(
    "--backend", type=click.Choice(["claude", "codex", "codex_sdk"]), default=None
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agents.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    for directory in (
        config.state.sessions_dir,
        config.issues.directory,
        config.agents.prompts_dir,
    ):
        (repo_root / directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized specflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agents.primary}")


@cli.command("run")
@click.argument("spec", required=False, type=click.Path(path_type=Path))
@click.option("--dry-run", is_flag=True, default=False, help="Stop after planning.")
@click.option("--resume", "resume_id", default=None, help="Resume a paused session.")
@click.option(
    "--accept-blocked",
    "accept_blocked",
    multiple=True,
    help="Accept a blocked task id when resuming.",
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    spec: Path | None,
    dry_run: bool,
    resume_id: str | None,
    accept_blocked: tuple[str, ...],
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    if resume_id is None and spec is None:
        raise click.UsageError("Provide a spec path or --resume <session-id>.")
    if resume_id is not None and dry_run:
        raise click.UsageError("--dry-run cannot be combined with --resume.")
    manager = _load_manager(repo_root, config_value)
    try:
        if resume_id is not None:
            result = asyncio.run(manager.resume(resume_id, accept_blocked=accept_blocked))
        else:
            result = asyncio.run(manager.start(spec, dry_run=dry_run))
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result, manager.store.audit_path(result.session_id))


@cli.command("status")
@click.argument("session_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(session_id: str | None, as_json: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    manager = _load_manager(repo_root, config_value)
    try:
        report = manager.status(session_id)
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return
    _print_status(report)


@cli.command("pause")
@click.argument("session_id", required=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def pause_command(session_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    manager = _load_manager(repo_root, config_value)
    try:
        paused = manager.pause(session_id)
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Pause requested for {paused}; it takes effect at the next gate.")


@cli.command("sessions")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def sessions_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    manager = _load_manager(repo_root, config_value)
    reports = manager.list_sessions()
    if not reports:
        click.echo("No sessions found.")
        return
    for report in reports:
        click.echo(f"{report.session_id} {report.status:<9} {report.active_step}")


@cli.command("checkpoints")
@click.argument("session_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def checkpoints_command(session_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    manager = _load_manager(repo_root, config_value)
    try:
        checkpoints = manager.store.checkpoints.history(session_id)
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in checkpoints:
        click.echo(
            f"{checkpoint.checkpoint_id} {checkpoint.current_phase:<8} "
            f"{len(checkpoint.tasks_completed)}/"
            f"{len(checkpoint.tasks_completed) + len(checkpoint.tasks_pending)} "
            f"{checkpoint.last_action}"
        )


@cli.group("issues")
def issues_group() -> None:
    """Inspect the issues created for planned tasks."""


@issues_group.command("list")
@click.option("--status", "statuses", multiple=True)
@click.option("--priority", "priorities", multiple=True)
@click.option("--label", "labels", multiple=True)
@click.option("--assignee", default=None)
@click.option("--project", default=None)
@click.option("--limit", default=100, show_default=True, type=click.IntRange(1, 1000))
@click.option("--offset", default=0, show_default=True, type=click.IntRange(min=0))
@click.option(
    "--format", "output_format", type=click.Choice(ISSUE_FORMATS), default="summary", show_default=True
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def issues_list_command(
    statuses: tuple[str, ...],
    priorities: tuple[str, ...],
    labels: tuple[str, ...],
    assignee: str | None,
    project: str | None,
    limit: int,
    offset: int,
    output_format: str,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = MarkdownIssueStore(repo_root / config.issues.directory, project=config.project.name)
    filters = IssueFilters(
        status=list(statuses) or None,
        priority=list(priorities) or None,
        labels=list(labels) or None,
        assignee=assignee,
        project=project,
    )
    try:
        payload = store.list_serialized(
            filters,
            limit=limit,
            offset=offset,
            format=output_format,  # type: ignore[arg-type]
        )
    except SpecflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
