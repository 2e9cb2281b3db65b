from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

BackendEventHook = Callable[[dict[str, Any]], None]


def render_prompt(user_prompt: str, context: dict[str, Any], tools: list[str] | None) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    parts = [user_prompt]
    if visible:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible, ensure_ascii=False, indent=2, default=str))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        nested = message.get("content")
        if isinstance(nested, str):
            return nested
        if isinstance(nested, list):
            return extract_content({"content": nested})
    return ""


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class CliAgentBackend(AgentBackend):
    """Streams an agent CLI that prints one JSON event per line.

    Agents report progress by printing ``{"event": "step", ...}`` and
    ``{"event": "commit", ...}`` lines inside their text output; those reach the
    worker unchanged as part of the streamed content.
    """

    name = "cli"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        raise NotImplementedError

    def build_env(self, system_prompt: str, scratch: Path) -> dict[str, str] | None:
        return None

    def _cwd(self, context: dict[str, Any]) -> str | None:
        override = context.get("_working_directory")
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        with tempfile.TemporaryDirectory(prefix="conductor-agent-") as scratch:
            env = self.build_env(system_prompt, Path(scratch))
            self._emit({"event": f"{self.name}_cli_start", "command": command[:3]})
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=self._cwd(context),
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise BackendProcessError(
                    f"{self.name} binary not runnable: {self.binary}",
                    backend=self.name,
                    retriable=False,
                ) from exc
            if process.stdout is None:
                raise BackendProcessError(
                    f"{self.name} backend did not expose stdout.",
                    backend=self.name,
                    retriable=False,
                )

            try:
                parse_buffer = ""
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    candidate = f"{parse_buffer}{line}" if parse_buffer else line
                    try:
                        event = json.loads(candidate)
                        parse_buffer = ""
                    except json.JSONDecodeError:
                        if _appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                        parse_buffer = ""
                        yield line
                        continue
                    if not isinstance(event, dict):
                        continue
                    content = extract_content(event)
                    if content:
                        yield content
                if parse_buffer:
                    yield parse_buffer

                return_code = await process.wait()
            finally:
                if process.returncode is None:
                    process.kill()
                    await process.wait()

            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            self._emit({"event": f"{self.name}_cli_exit", "exit_code": return_code})
            if return_code != 0:
                raise BackendExecutionError(
                    f"{self.name} backend failed with exit code {return_code}: "
                    f"{stderr_output[-400:]}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    def build_env(self, system_prompt: str, scratch: Path) -> dict[str, str] | None:
        prompt_file = scratch / "system.md"
        prompt_file.write_text(system_prompt, encoding="utf-8")
        env = os.environ.copy()
        env["CLAUDE_MD"] = str(prompt_file)
        return env


class CodexBackend(CliAgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_prompt(user_prompt, context, tools))
        return command


BACKENDS: dict[str, type[CliAgentBackend]] = {
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
}
