from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from conductor.errors import ConductorError


class BackendExecutionError(ConductorError):
    """Raised when an agent process fails.

    ``retriable=False`` marks transport failures that retrying cannot fix (missing
    binary, broken pipes); workers surface those as crashes.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent run exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started or read."""


class AgentBackend(ABC):
    name = "agent"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Run an agent on one task and stream its textual output."""
