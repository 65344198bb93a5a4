from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from specflow.backends.base import (
    AgentBackend,
    AgentMessage,
    AgentRequest,
    BackendExecutionError,
    parse_json_text,
    result_message,
)
from specflow.backends.codex import CodexBackend

logger = logging.getLogger(__name__)


class CodexSDKBackend(AgentBackend):
    """Responses API backend; falls back to the Codex CLI when no client can be built."""

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.info("OpenAI client unavailable, using Codex CLI: %s", exc)
                self._client = None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    def _text_format(self, request: AgentRequest) -> dict[str, Any] | None:
        if not request.output_schema:
            return None
        return {
            "format": {
                "type": "json_schema",
                "name": f"{request.role}_output",
                "schema": request.output_schema,
                "strict": False,
            }
        }

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        if self._client is None:
            async for message in self.cli_fallback.execute(request):
                yield message
            return

        model_name = request.model.strip() if request.model and request.model.strip() else self.model
        kwargs: dict[str, Any] = {
            "model": model_name,
            "input": request.rendered_prompt(),
        }
        if request.system_prompt:
            kwargs["instructions"] = request.system_prompt
        text_format = self._text_format(request)
        if text_format is not None:
            kwargs["text"] = text_format

        def _request() -> Any:
            return self._client.responses.create(**kwargs)

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield AgentMessage(type="assistant", content=content)
        structured = parse_json_text(content) if request.output_schema else None
        yield result_message(structured, content=content)
