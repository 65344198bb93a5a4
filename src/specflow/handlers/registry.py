from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from specflow.config import SpecflowConfig
from specflow.errors import ConfigurationError
from specflow.state.context import ContextStore

if TYPE_CHECKING:
    from specflow.agents.base import SpecialistAgent
    from specflow.issues import MarkdownIssueStore
    from specflow.reporters import WorkflowReporter
    from specflow.vcs import GitVersionControl, ShellTestRunner


@dataclass(slots=True)
class Collaborators:
    """External providers the built-in handlers call through."""

    agents: dict[str, SpecialistAgent] = field(default_factory=dict)
    issues: MarkdownIssueStore | None = None
    vcs: GitVersionControl | None = None
    tests: ShellTestRunner | None = None
    reporters: list[WorkflowReporter] = field(default_factory=list)

    def agent(self, role: str) -> SpecialistAgent:
        try:
            return self.agents[role]
        except KeyError as exc:
            raise ConfigurationError(f"No agent registered for role '{role}'.") from exc


@dataclass(slots=True)
class SessionHandle:
    session_id: str
    spec_path: Path
    worktree_path: Path
    branch_name: str
    context: ContextStore
    collaborators: Collaborators
    config: SpecflowConfig = field(default_factory=SpecflowConfig.default)


Handler = Callable[[SessionHandle, Any], Awaitable[Any]]


class HandlerRegistry:
    """Maps step names to async handler callables."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> Handler:
        handler = self._handlers.get(name)
        if handler is None:
            raise ConfigurationError(f"No handler registered with name: {name}")
        return handler
