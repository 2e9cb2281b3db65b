from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from conductor.config import CONFIG_FILENAME, ConductorConfig, load_config, save_config
from conductor.errors import ConductorError
from conductor.learning import LearningStore
from conductor.orchestrator import Orchestrator
from conductor.state import GitNotesStore, WorkRecordStore
from conductor.state.git_notes import STATE_DIRNAME
from conductor.tracker import load_graph_file


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    state: GitNotesStore
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _open_state(repo_root: Path, config: ConductorConfig) -> GitNotesStore:
    return GitNotesStore(
        repo_root,
        backend_mode=config.state.backend,
        branch_ref=config.state.branch_ref,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    state = _open_state(repo_root, config)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        orchestrator=Orchestrator.from_config(repo_root, config, state=state),
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level.")
def cli(verbose: bool) -> None:
    """Conductor: drive a dependency graph of work items to completion."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--tracker", type=click.Choice(["beads", "local"]), default=None)
@config_option
def init_command(backend: str | None, tracker: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if tracker:
        config.tracker.backend = tracker  # type: ignore[assignment]
    save_config(config_path, config)

    (repo_root / STATE_DIRNAME).mkdir(parents=True, exist_ok=True)
    state = _open_state(repo_root, config)
    if not state.get_context():
        state.set_context({"status": "ready", "paused": False, "current_run_id": None})

    click.echo(f"Initialized conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Tracker: {config.tracker.backend}")
    click.echo(f"State backend: {state.backend_mode}")


@cli.command("load")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@config_option
def load_command(graph_file: Path, config_value: str) -> None:
    """Load work items from a JSON graph file into the record store."""
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        items = load_graph_file(graph_file)
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    records = WorkRecordStore(_open_state(repo_root, config))
    try:
        intents = records.add_items(items)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    created = sum(1 for intent in intents if intent.kind == "created")
    click.echo(f"Loaded {len(items)} item(s), {created} new.")


@cli.command("run")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many heartbeats.")
@config_option
def run_command(max_ticks: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        summary = asyncio.run(runtime.orchestrator.run(max_ticks=max_ticks))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Status: {summary.status}")
    click.echo(f"Ticks: {summary.ticks}")
    click.echo(f"Completed: {len(summary.completed)}")
    click.echo(f"Failed: {len(summary.failed)}")
    click.echo(f"Escalations: {summary.escalations}")
    click.echo("Queue: " + ", ".join(f"{key}={value}" for key, value in summary.counts.items()))


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@config_option
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    _echo_json(runtime.orchestrator.status(verbose=verbose))


@cli.command("pause")
@config_option
def pause_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.orchestrator.pause()
    click.echo("Dispatch paused.")


@cli.command("resume")
@config_option
def resume_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.orchestrator.resume()
    click.echo("Dispatch resumed.")


@cli.command("recover")
@config_option
def recover_command(config_value: str) -> None:
    """Requeue in-progress items orphaned by a dead run."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        outcomes = runtime.orchestrator.recover_orphans()
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    if not outcomes:
        click.echo("No orphaned items.")
        return
    for outcome in outcomes:
        click.echo(f"{outcome['item_id']} {outcome['action']}")


@cli.command("escalations")
@click.option("--all", "include_all", is_flag=True, default=False)
@config_option
def escalations_command(include_all: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    records = runtime.orchestrator.escalations.entries(include_resolved=include_all)
    if not records:
        click.echo("No escalations.")
        return
    for record in records:
        marker = "resolved" if record.resolved else "open"
        click.echo(f"{record.id} {record.item_id} {marker:<8} [{record.source}] {record.reason}")


@cli.command("resolve")
@click.argument("escalation_id")
@config_option
def resolve_command(escalation_id: str, config_value: str) -> None:
    """Mark an escalation as handled by a human."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    record = runtime.orchestrator.escalations.resolve(escalation_id)
    if record is None:
        raise click.ClickException(f"Open escalation not found: {escalation_id}")
    click.echo(f"Resolved {record.id} ({record.item_id})")


@cli.command("learnings")
@config_option
def learnings_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = LearningStore(_open_state(repo_root, config))
    records = sorted(store.records(), key=lambda record: record.seen_count, reverse=True)
    if not records:
        click.echo("No learnings recorded.")
        return
    for record in records:
        click.echo(
            f"{record.seen_count:>4} {record.trend:<7} [{record.category}] "
            f"{record.pattern} -> {record.fix}"
        )


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@config_option
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
