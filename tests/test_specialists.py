import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from conductor.backends.base import AgentBackend
from conductor.models import Capability
from conductor.specialists import (
    DataLayerAgent,
    GeneralistAgent,
    TesterAgent,
    specialist_for,
)


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.execute_calls = 0
        self.last_system_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None
        self.last_tools: list[str] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        self.last_system_prompt = system_prompt
        self.last_context = context
        self.last_tools = tools
        self.execute_calls += 1
        yield f"done: {user_prompt}"


def test_specialist_runs_and_reports_progress_protocol() -> None:
    backend = FakeBackend()
    agent = DataLayerAgent(backend)

    response = asyncio.run(agent.run("Add users table", {"item_id": "a"}))

    assert response.role == "data-engineer"
    assert response.content == "done: Add users table"
    assert response.metadata["capability"] == "data-layer"
    assert backend.execute_calls == 1
    assert backend.last_system_prompt is not None
    assert '"event": "step"' in backend.last_system_prompt
    assert backend.last_tools == sorted(DataLayerAgent.default_tools)


def test_model_override_reaches_backend_context() -> None:
    backend = FakeBackend()
    agent = TesterAgent(backend, model="gpt-5-codex")
    context = {"item_id": "a"}

    asyncio.run(agent.run("Cover edge cases", context, allowed_tools=["write_file", "read_file"]))

    assert backend.last_context == {"item_id": "a", "model": "gpt-5-codex"}
    assert "model" not in context
    assert backend.last_tools == ["read_file", "write_file"]


def test_tool_policy_rejects_unknown_tools() -> None:
    agent = GeneralistAgent(FakeBackend())

    with pytest.raises(ValueError, match="delete_repo"):
        agent.stream("anything", {}, allowed_tools=["read_file", "delete_repo"])


def test_specialist_for_falls_back_to_generalist() -> None:
    assert specialist_for(Capability.DATA_LAYER) is DataLayerAgent
    assert specialist_for("test") is TesterAgent
    assert specialist_for("quantum-layer") is GeneralistAgent
    assert specialist_for(None) is GeneralistAgent
