from __future__ import annotations

import asyncio
import json
import tempfile
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


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: AgentRequest, schema_path: Path | None = None) -> list[str]:
        command = [self.binary, "exec", "--json", "--skip-git-repo-check"]
        if request.system_prompt:
            command.extend(
                ["-c", f"instructions={json.dumps(request.system_prompt, ensure_ascii=False)}"]
            )
        if request.model:
            command.extend(["-m", request.model])
        if request.permission_mode == "bypassPermissions":
            command.append("--dangerously-bypass-approvals-and-sandbox")
        if schema_path is not None:
            command.extend(["--output-schema", str(schema_path)])
        command.append(request.rendered_prompt())
        return command

    @staticmethod
    def _item_text(event: dict[str, Any]) -> str:
        item = event.get("item")
        if not isinstance(item, dict):
            return ""
        text = item.get("text")
        return text if isinstance(text, str) else ""

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        cwd = request.cwd or self.working_directory
        with tempfile.TemporaryDirectory(prefix="specflow-codex-") as scratch:
            schema_path: Path | None = None
            if request.output_schema:
                schema_path = Path(scratch) / "schema.json"
                schema_path.write_text(json.dumps(request.output_schema), encoding="utf-8")
            command = self.build_command(request, schema_path)
            self._emit(
                {
                    "event": "codex_cli_start",
                    "command": command[:4],
                    "role": request.role,
                    "model": request.model,
                }
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(cwd) if cwd else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Codex binary not found: {self.binary}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    "Codex backend did not expose stdout.", backend=self.name, retriable=False
                )

            def _unparsed(line: str) -> None:
                self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})

            last_agent_text = ""
            async for event in iter_json_events(process.stdout, _unparsed):
                event_type = str(event.get("type", ""))
                self._emit({"event": "codex_json_event", "type": event_type})
                if event_type == "item.completed":
                    item = event.get("item") or {}
                    text = self._item_text(event)
                    if item.get("type") == "agent_message":
                        last_agent_text = text
                        yield AgentMessage(type="assistant", content=text)
                    elif text:
                        yield AgentMessage(type="tool", content=text)
                elif event_type == "turn.completed":
                    yield result_message(parse_json_text(last_agent_text), content=last_agent_text)
                elif event_type in {"turn.failed", "error"}:
                    error = event.get("error")
                    detail = error.get("message") if isinstance(error, dict) else event.get("message")
                    yield result_message(
                        subtype="error_during_execution",
                        content=last_agent_text,
                        errors=[str(detail or event_type)],
                    )

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            self._emit(
                {"event": "codex_cli_exit", "exit_code": return_code, "stderr": stderr_output[:400]}
            )
            if return_code != 0:
                raise BackendExecutionError(
                    f"Codex backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
