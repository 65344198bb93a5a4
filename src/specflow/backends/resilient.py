from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from specflow.backends.base import (
    AgentBackend,
    AgentMessage,
    AgentRequest,
    BackendEventHook,
    BackendExecutionError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    A whole invocation is buffered before it is replayed, so a failed attempt
    never leaks partial messages to the caller.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("backend event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    async def _collect(self, backend: AgentBackend, request: AgentRequest) -> list[AgentMessage]:
        async def _consume() -> list[AgentMessage]:
            return [message async for message in backend.execute(request)]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for backend_name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "role": request.role,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    messages = await self._collect(backend, request)
                except (BackendExecutionError, OSError) as exc:
                    retriable = getattr(exc, "retriable", True)
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "role": request.role,
                            "error": str(exc),
                            "retriable": retriable,
                        }
                    )
                    if not retriable:
                        break
                    continue

                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "role": request.role,
                        }
                    )
                for message in messages:
                    yield message
                return

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for {request.role}. {summary}",
            retriable=False,
        )
