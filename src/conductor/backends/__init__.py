from conductor.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from conductor.backends.cli import BACKENDS, ClaudeCodeBackend, CliAgentBackend, CodexBackend
from conductor.backends.resilient import BackendRetryPolicy, ResilientBackend, build_backend

__all__ = [
    "BACKENDS",
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendRetryPolicy",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "ResilientBackend",
    "build_backend",
]
