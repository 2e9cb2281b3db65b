from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from conductor.backends.base import AgentBackend
from conductor.models import Capability

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
    "git",
}

PROGRESS_PROTOCOL = """
Report progress as single-line JSON events in your output:
{"event": "step", "name": "<short step description>"} after each finished step,
{"event": "commit", "ref": "<sha>"} after each commit on your branch, and
{"event": "discovered", "title": "<title>", "kind": "<capability>", "deps": ["<id>"]} for
necessary work outside this item; report it instead of doing it.
Commit early; each commit must leave the tree buildable.
""".strip()


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    capability: Capability = Capability.GENERAL
    fallback_prompt: str = "You are a software specialist."
    default_tools: tuple[str, ...] = ("read_file", "write_file", "edit_file", "run_command", "git")

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = f"{self.fallback_prompt.strip()}\n\n{PROGRESS_PROTOCOL}"

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ValueError(
                "Tool policy rejected unknown tools for specialist run: " + ", ".join(unknown)
            )
        return normalized

    def stream(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        tools = self._normalize_allowed_tools(
            list(self.default_tools) if allowed_tools is None else allowed_tools
        )
        return self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            tools=tools,
        )

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> SpecialistResponse:
        chunks: list[str] = []
        async for chunk in self.stream(instruction, context, allowed_tools):
            chunks.append(chunk)
        return SpecialistResponse(
            role=self.role,
            content="".join(chunks).strip(),
            metadata={"instruction": instruction, "capability": self.capability.value},
        )
