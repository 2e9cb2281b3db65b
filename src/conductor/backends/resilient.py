from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from conductor.backends.cli import BACKENDS, BackendEventHook
from conductor.config import BackendConfig


@dataclass(slots=True)
class BackendRetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1)) if attempt > 0 else 0.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with an idle timeout, retry, and failover.

    Chunks are streamed as they arrive. Retries and failover only happen while
    an attempt has produced no output yet; a failure after partial output is
    raised as unrecoverable so the caller can resume from its own checkpoint.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: BackendRetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _next_chunk(self, stream: AsyncIterator[str]) -> str:
        try:
            return await asyncio.wait_for(
                anext(stream), timeout=self.retry_policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend produced no output for {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        all_unrecoverable = True
        item_id = context.get("item_id")
        for backend_name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "item_id": item_id,
                        }
                    )
                    await asyncio.sleep(delay)
                streamed = False
                stream = backend.execute(system_prompt, user_prompt, context, tools)
                try:
                    while True:
                        try:
                            chunk = await self._next_chunk(stream)
                        except StopAsyncIteration:
                            break
                        streamed = True
                        yield chunk
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    all_unrecoverable = all_unrecoverable and not exc.retriable
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "item_id": item_id,
                            "error": str(exc)[:400],
                            "retriable": exc.retriable,
                            "streamed": streamed,
                        }
                    )
                    if streamed:
                        raise BackendExecutionError(
                            f"{backend_name} failed after streaming output: {exc}",
                            backend=backend_name,
                            exit_code=exc.exit_code,
                            retriable=False,
                        ) from exc
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "item_id": item_id,
                        }
                    )
                return

        summary = "; ".join(errors[-6:])
        # Retriable only when at least one attempt failed for a recoverable reason.
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=not all_unrecoverable,
        )


def build_backend(
    config: BackendConfig,
    working_directory: Path | None = None,
    event_hook: BackendEventHook | None = None,
) -> ResilientBackend:
    primary = BACKENDS[config.primary](working_directory=working_directory, event_hook=event_hook)
    fallback = BACKENDS[config.fallback](
        working_directory=working_directory, event_hook=event_hook
    )
    return ResilientBackend(
        config.primary,
        primary,
        config.fallback,
        fallback,
        BackendRetryPolicy(
            max_retries=max(0, int(config.max_retries)),
            backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
            timeout_seconds=max(1.0, float(config.timeout_seconds)),
        ),
        event_hook=event_hook,
    )
