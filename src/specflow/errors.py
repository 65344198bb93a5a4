from __future__ import annotations

from typing import Any


class SpecflowError(RuntimeError):
    """Base class for every error the workflow engine classifies."""


class ConfigurationError(SpecflowError):
    """Fatal misconfiguration: cyclic tasks, zero tasks planned, missing spec."""


class TransientError(SpecflowError):
    """A failure worth retrying with a fresh attempt."""

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        super().__init__(message)
        self.retriable = retriable


class AgentInvocationError(TransientError):
    """The agent stream ended in an error result or without a result at all."""

    def __init__(
        self,
        message: str,
        *,
        role: str | None = None,
        subtype: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, retriable=retriable)
        self.role = role
        self.subtype = subtype


class MalformedOutput(SpecflowError):
    """Structured output was missing or did not match the declared schema."""

    def __init__(self, message: str, *, role: str | None = None, raw: Any = None) -> None:
        super().__init__(message)
        self.role = role
        self.raw = raw


class EscalationError(SpecflowError):
    """Execution cannot continue without a human; the session pauses."""

    def __init__(
        self,
        reason: str,
        *,
        step: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.step = step
        self.context = dict(context or {})


class GateFailure(EscalationError):
    """A quality gate rejected the transition; never bypassed."""


class PauseRequested(EscalationError):
    """A pause was requested and observed at a gate."""


class SessionNotFound(SpecflowError):
    def __init__(self, session_id: str | None) -> None:
        label = session_id or "<latest>"
        super().__init__(f"Session not found: {label}")
        self.session_id = session_id


class SessionLocked(SpecflowError):
    """Another process is already driving this session."""


class SessionStateError(SpecflowError):
    """Persisted session state is unreadable or the requested action is invalid."""
