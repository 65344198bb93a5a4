from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "codex_sdk"]
IsolationMode = Literal["worktree", "branch", "none"]

CONFIG_FILENAME = "specflow.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"


@dataclass(slots=True)
class AgentsConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    model: str = "claude-sonnet-4-5"
    permission_mode: str = "bypassPermissions"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    prompts_dir: str = ".specflow/prompts"


@dataclass(slots=True)
class WorkflowConfig:
    max_attempts: int = 2
    max_fix_attempts: int = 2
    # 0 disables escalation on accumulated minor review findings.
    minor_issue_threshold: int = 0
    isolation: IsolationMode = "worktree"
    base_branch: str = "main"
    branch_prefix: str = "specflow/"
    remote: str = "origin"
    draft_pull_requests: bool = False
    reporters: list[str] = field(default_factory=lambda: ["log"])


@dataclass(slots=True)
class IssuesConfig:
    directory: str = ".specflow/issues"
    labels: list[str] = field(default_factory=lambda: ["specflow", "auto-created"])


@dataclass(slots=True)
class StateConfig:
    sessions_dir: str = ".specflow/sessions"
    worktrees_dir: str = ".specflow/worktrees"


@dataclass(slots=True)
class SpecflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    issues: IssuesConfig = field(default_factory=IssuesConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> SpecflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            issues=IssuesConfig(**data.get("issues", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
            },
            "agents": {
                "primary": self.agents.primary,
                "fallback": self.agents.fallback,
                "model": self.agents.model,
                "permission_mode": self.agents.permission_mode,
                "max_retries": self.agents.max_retries,
                "retry_backoff_seconds": self.agents.retry_backoff_seconds,
                "timeout_seconds": self.agents.timeout_seconds,
                "prompts_dir": self.agents.prompts_dir,
            },
            "workflow": {
                "max_attempts": self.workflow.max_attempts,
                "max_fix_attempts": self.workflow.max_fix_attempts,
                "minor_issue_threshold": self.workflow.minor_issue_threshold,
                "isolation": self.workflow.isolation,
                "base_branch": self.workflow.base_branch,
                "branch_prefix": self.workflow.branch_prefix,
                "remote": self.workflow.remote,
                "draft_pull_requests": self.workflow.draft_pull_requests,
                "reporters": list(self.workflow.reporters),
            },
            "issues": {
                "directory": self.issues.directory,
                "labels": list(self.issues.labels),
            },
            "state": {
                "sessions_dir": self.state.sessions_dir,
                "worktrees_dir": self.state.worktrees_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "agents", "workflow", "issues", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecflowConfig:
    if not path.exists():
        return SpecflowConfig.default()
    return SpecflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SpecflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
