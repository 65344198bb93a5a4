from specflow.backends.base import (
    AgentBackend,
    AgentMessage,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from specflow.backends.claude import ClaudeCodeBackend
from specflow.backends.codex import CodexBackend
from specflow.backends.codex_sdk import CodexSDKBackend
from specflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentMessage",
    "AgentRequest",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
]
