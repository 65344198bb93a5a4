from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from specflow.errors import TransientError

MessageType = Literal["assistant", "tool", "system", "result"]
BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(TransientError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message, retriable=retriable)
        self.backend = backend
        self.exit_code = exit_code


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentRequest:
    role: str
    prompt: str
    system_prompt: str = ""
    allowed_tools: list[str] | None = None
    output_schema: dict[str, Any] | None = None
    model: str | None = None
    cwd: Path | None = None
    permission_mode: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def rendered_prompt(self) -> str:
        parts = [self.prompt]
        if self.context:
            parts.append("Context JSON:")
            parts.append(json.dumps(self.context, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)


@dataclass(slots=True)
class AgentMessage:
    type: MessageType
    subtype: str | None = None
    content: str = ""
    structured_output: Any = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.type == "result" and bool(self.subtype) and self.subtype != "success"


def result_message(
    structured_output: Any = None,
    *,
    content: str = "",
    subtype: str = "success",
    errors: list[str] | None = None,
) -> AgentMessage:
    return AgentMessage(
        type="result",
        subtype=subtype,
        content=content,
        structured_output=structured_output,
        errors=list(errors or []),
    )


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_json_events(
    lines: AsyncIterable[bytes],
    on_unparsed: Callable[[str], None] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Decode a JSON-lines stream, stitching objects split across lines."""
    parse_buffer = ""
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if _appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            if on_unparsed is not None:
                on_unparsed(line)
            continue
        if isinstance(event, dict):
            yield event
    if parse_buffer and on_unparsed is not None:
        on_unparsed(parse_buffer)


def parse_json_text(raw: str) -> Any:
    """Best-effort decode of a JSON document an agent printed as text."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        """Run one agent invocation and stream typed messages ending in a result."""
