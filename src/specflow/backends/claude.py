from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from specflow.backends.base import (
    AgentBackend,
    AgentMessage,
    AgentRequest,
    BackendEventHook,
    BackendExecutionError,
    BackendProcessError,
    iter_json_events,
    parse_json_text,
    result_message,
)


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.rendered_prompt(),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        if request.model:
            command.extend(["--model", request.model])
        if request.permission_mode:
            command.extend(["--permission-mode", request.permission_mode])
        if request.allowed_tools:
            command.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.output_schema:
            command.extend(
                ["--json-schema", json.dumps(request.output_schema, ensure_ascii=False)]
            )
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""

    @staticmethod
    def _to_message(event: dict[str, Any]) -> AgentMessage | None:
        event_type = event.get("type")
        if event_type == "result":
            subtype = str(event.get("subtype") or "success")
            text = event.get("result") if isinstance(event.get("result"), str) else ""
            structured = event.get("structured_output")
            if structured is None and subtype == "success" and text:
                structured = parse_json_text(text)
            errors = event.get("errors")
            return result_message(
                structured,
                content=text,
                subtype="error_during_execution" if event.get("is_error") else subtype,
                errors=[str(item) for item in errors] if isinstance(errors, list) else [],
            )
        if event_type == "assistant":
            return AgentMessage(type="assistant", content=ClaudeCodeBackend._extract_content(event))
        if event_type == "user":
            return AgentMessage(type="tool", content=ClaudeCodeBackend._extract_content(event))
        if event_type == "system":
            return AgentMessage(type="system", subtype=str(event.get("subtype") or ""))
        return None

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        command = self.build_command(request)
        cwd = request.cwd or self.working_directory
        self._emit({"event": "claude_cli_start", "role": request.role, "model": request.model})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend=self.name, retriable=False
            )

        def _unparsed(line: str) -> None:
            self._emit({"event": "claude_json_parse_fallback", "line": line[:200]})

        async for event in iter_json_events(process.stdout, _unparsed):
            message = self._to_message(event)
            if message is not None:
                yield message

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "claude_cli_exit", "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
