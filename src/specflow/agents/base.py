from __future__ import annotations

import logging
from contextlib import aclosing
from pathlib import Path
from typing import Any, ClassVar

from specflow.backends.base import AgentBackend, AgentMessage, AgentRequest
from specflow.errors import AgentInvocationError, ConfigurationError, MalformedOutput

logger = logging.getLogger(__name__)

TOOL_POLICY_ALLOWLIST = {"Read", "Write", "Edit", "Bash", "Glob", "Grep"}


class SpecialistAgent:
    role: ClassVar[str] = "specialist"
    fallback_prompt: ClassVar[str] = "You are a software specialist."
    allowed_tools: ClassVar[tuple[str, ...]] = ("Read", "Glob", "Grep")
    result_type: ClassVar[Any] = None

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        permission_mode: str | None = None,
        prompts_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.permission_mode = permission_mode
        self.system_prompt = self._load_system_prompt(prompts_dir)

    def _load_system_prompt(self, prompts_dir: Path | None) -> str:
        if prompts_dir is None:
            return self.fallback_prompt.strip()
        prompt_path = prompts_dir / f"{self.role}.md"
        if not prompt_path.is_file():
            return self.fallback_prompt.strip()
        return prompt_path.read_text(encoding="utf-8").strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: tuple[str, ...] | list[str]) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ConfigurationError(
                "Tool policy rejected unknown tools for specialist run: " + ", ".join(unknown)
            )
        return normalized

    def build_request(
        self,
        instruction: str,
        context: dict[str, Any],
        cwd: Path | None = None,
    ) -> AgentRequest:
        return AgentRequest(
            role=self.role,
            prompt=instruction,
            system_prompt=self.system_prompt,
            allowed_tools=self._normalize_allowed_tools(self.allowed_tools),
            output_schema=self.result_type.SCHEMA if self.result_type is not None else None,
            model=self.model,
            cwd=cwd,
            permission_mode=self.permission_mode,
            context=context,
        )

    async def invoke(
        self,
        instruction: str,
        context: dict[str, Any],
        cwd: Path | None = None,
    ) -> Any:
        """Consume the agent stream and return the result's structured output."""
        request = self.build_request(instruction, context, cwd)
        transcript: list[str] = []
        result: AgentMessage | None = None
        # Drain the stream so the backend's own exit-code check runs after the result.
        async with aclosing(self.backend.execute(request)) as stream:
            async for message in stream:
                if message.type != "result":
                    if message.content:
                        transcript.append(message.content)
                    continue
                if message.is_error:
                    detail = "; ".join(message.errors) or message.content or "no detail"
                    raise AgentInvocationError(
                        f"{self.role} agent ended with {message.subtype}: {detail}",
                        role=self.role,
                        subtype=message.subtype,
                    )
                if result is None:
                    result = message
        if result is None:
            raise AgentInvocationError(
                f"{self.role} agent stream ended without a result message.", role=self.role
            )
        logger.debug("%s agent finished after %s messages", self.role, len(transcript) + 1)
        return result.structured_output

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        cwd: Path | None = None,
    ) -> Any:
        structured = await self.invoke(instruction, context, cwd)
        if structured is None:
            raise MalformedOutput(f"{self.role} agent returned no structured output.", role=self.role)
        return self.result_type.from_payload(structured)

    def default_output(self) -> Any:
        return self.result_type()
