import json
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from conductor.backends.base import AgentBackend
from conductor.cli import cli
from conductor.config import load_config, save_config


class FakeBackend(AgentBackend):
    """Writes one file per item into its working tree and reports the step."""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        workdir = Path(context["_working_directory"])
        (workdir / f"{context['item_id']}.txt").write_text(f"{user_prompt}\n", encoding="utf-8")
        yield json.dumps({"event": "step", "name": f"wrote {context['item_id']}.txt"}) + "\n"
        yield "done"


def _init_git_repo(repo_path: Path) -> None:
    for command in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(command, cwd=repo_path, check=True, text=True, capture_output=True)
    (repo_path / "README.md").write_text("# demo\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _set_fast_settings(config_path: Path, *, max_attempts: int = 3) -> None:
    config = load_config(config_path)
    config.project.test_command = "true"
    config.project.lint_command = ""
    config.pool.heartbeat_seconds = 0
    config.retry.max_attempts = max_attempts
    config.retry.backoff_seconds = 0
    config.tracker.insights_enabled = False
    save_config(config_path, config)


def _write_graph(path: Path, items: list[dict[str, Any]]) -> Path:
    path.write_text(json.dumps({"items": items}), encoding="utf-8")
    return path


@pytest.fixture
def fake_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "conductor.orchestrator.build_backend",
        lambda config, repo_root, event_hook=None: FakeBackend(),
    )


def test_cli_full_lifecycle_in_git_repo(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_backend: None
) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    runner = CliRunner()
    graph = _write_graph(
        tmp_path / "graph.json",
        [
            {"id": "a", "title": "Schema", "kind": "data-layer"},
            {"id": "b", "title": "Endpoint", "deps": ["a"], "kind": "interface-layer"},
        ],
    )

    init_result = runner.invoke(cli, ["init", "--tracker", "local"])
    assert init_result.exit_code == 0, init_result.output
    assert "Tracker: local" in init_result.output
    _set_fast_settings(repo / "conductor.toml")

    load_result = runner.invoke(cli, ["load", str(graph)])
    assert load_result.exit_code == 0, load_result.output
    assert "Loaded 2 item(s), 2 new." in load_result.output
    assert "Loaded 2 item(s), 0 new." in runner.invoke(cli, ["load", str(graph)]).output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert json.loads(status_result.stdout)["counts"]["ready"] == 2

    assert "Dispatch paused." in runner.invoke(cli, ["pause"]).output
    paused_run = runner.invoke(cli, ["run"])
    assert paused_run.exit_code != 0
    assert "paused" in paused_run.output
    assert "Dispatch resumed." in runner.invoke(cli, ["resume"]).output

    run_result = runner.invoke(cli, ["run", "--max-ticks", "100"])
    assert run_result.exit_code == 0, run_result.output
    assert "Run ID:" in run_result.output
    assert "Status: complete" in run_result.output
    assert "Completed: 2" in run_result.output
    assert (repo / "a.txt").exists()
    assert (repo / "b.txt").exists()

    final_status = json.loads(runner.invoke(cli, ["status"]).stdout)
    assert final_status["counts"]["completed"] == 2
    assert final_status["leases"]["active"] is None

    assert "No escalations." in runner.invoke(cli, ["escalations"]).output
    assert "No orphaned items." in runner.invoke(cli, ["recover"]).output


def test_cli_escalation_flow_without_git(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_backend: None
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    graph = _write_graph(
        tmp_path / "graph.json", [{"id": "x", "title": "Broken", "test_command": "false"}]
    )

    assert runner.invoke(cli, ["init", "--tracker", "local"]).exit_code == 0
    _set_fast_settings(tmp_path / "conductor.toml", max_attempts=1)
    assert runner.invoke(cli, ["load", str(graph)]).exit_code == 0

    run_result = runner.invoke(cli, ["run", "--max-ticks", "50"])
    assert run_result.exit_code == 0, run_result.output
    assert "Failed: 1" in run_result.output
    assert "Escalations: 1" in run_result.output

    listed = runner.invoke(cli, ["escalations"])
    assert "[retry_exhausted]" in listed.output
    escalation_id = listed.output.split()[0]

    resolved = runner.invoke(cli, ["resolve", escalation_id])
    assert resolved.exit_code == 0
    assert f"Resolved {escalation_id} (x)" in resolved.output
    assert "No escalations." in runner.invoke(cli, ["escalations"]).output
    assert "resolved" in runner.invoke(cli, ["escalations", "--all"]).output

    missing = runner.invoke(cli, ["resolve", escalation_id])
    assert missing.exit_code != 0
    assert "Open escalation not found" in missing.output

    learnings = runner.invoke(cli, ["learnings"])
    assert learnings.exit_code == 0
    assert "No learnings recorded." not in learnings.output


def test_cli_backend_switch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(cli, ["init", "--backend", "claude"]).exit_code == 0
    result = runner.invoke(cli, ["backend", "codex"])

    assert result.exit_code == 0
    assert "Primary backend set to codex" in result.output
    assert load_config(tmp_path / "conductor.toml").backend.primary == "codex"
    assert runner.invoke(cli, ["backend", "gemini"]).exit_code != 0
