import json
import subprocess
from pathlib import Path

import pytest

from conductor.errors import InvalidTransition, StateStoreError
from conductor.models import Status, WorkItem
from conductor.state import CheckpointLedger, EscalationLog, GitNotesStore, WorkRecordStore


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def test_git_notes_store_roundtrip_in_git_repo(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)

    store = GitNotesStore(repo)
    payload = {"status": "running", "tick": 3}
    store.set_json("context", payload)

    assert store.git_enabled is True
    assert store.get_json("context") == payload


def test_git_notes_store_fallback_to_local_state(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)
    payload = {"status": "running", "tick": 3}
    store.set_json("context", payload)

    assert store.git_enabled is False
    assert store.backend_mode == "local"
    assert store.get_json("context") == payload


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)
    local_path = tmp_path / ".conductor" / "state" / "context.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("context") == {"legacy": True}

    store.set_json("context", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == GitNotesStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("metrics")["revision"]

    assert store.get_json("metrics")["count"] == 2
    assert second_revision > first_revision


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)
    store.set_json("queue", {"items": []})
    revision = store.get_envelope("queue")["revision"]
    store.set_json("queue", {"items": []})

    with pytest.raises(StateStoreError, match="Concurrent state update"):
        store.set_json("queue", {"items": []}, expected_revision=revision)


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)

    with pytest.raises(StateStoreError):
        store.set_json("tasks", [])


def test_metric_helpers_accumulate(tmp_path: Path) -> None:
    store = GitNotesStore(tmp_path)
    store.increment_metric("dispatched")
    store.increment_metric("dispatched", 2)
    for index in range(5):
        store.append_metric_event("backend_events", {"n": index}, keep=3)

    metrics = store.get_metrics()
    assert metrics["dispatched"] == 3
    assert [event["n"] for event in metrics["backend_events"]] == [2, 3, 4]


def test_record_store_persists_transitions(tmp_path: Path) -> None:
    records = WorkRecordStore(GitNotesStore(tmp_path))
    records.add_items(
        [WorkItem(id="a", title="A"), WorkItem(id="b", title="B", dependencies={"a"})]
    )

    records.dispatch("a", 0)
    reopened = WorkRecordStore(GitNotesStore(tmp_path))
    snapshot = reopened.snapshot()

    assert snapshot.items["a"].status is Status.IN_PROGRESS
    assert snapshot.locks["a"].slot_index == 0
    assert reopened.counts()["in_progress"] == 1

    with pytest.raises(InvalidTransition):
        reopened.dispatch("b", 1)
    assert reopened.get("b").status is Status.READY


def test_record_store_add_items_keeps_runtime_fields(tmp_path: Path) -> None:
    records = WorkRecordStore(GitNotesStore(tmp_path))
    records.add_items([WorkItem(id="a", title="A")])
    records.dispatch("a", 0)

    records.add_items([WorkItem(id="a", title="A renamed", priority=0)])
    item = records.get("a")

    assert item.title == "A renamed"
    assert item.priority == 0
    assert item.status is Status.IN_PROGRESS
    assert item.attempt == 1


def test_checkpoint_ledger_appends_idempotently(tmp_path: Path) -> None:
    ledger = CheckpointLedger(GitNotesStore(tmp_path))
    ledger.begin("a")
    ledger.record_step("a", "write schema")
    ledger.record_step("a", "write schema")
    ledger.record_step("a", "add migration")
    ledger.record_commit("a", "abc123")
    ledger.record_commit("a", "abc123")

    checkpoint = ledger.get("a")
    assert checkpoint.steps_completed == ["write schema", "add migration"]
    assert checkpoint.current_step == 2
    assert checkpoint.commits == ["abc123"]

    ledger.delete("a")
    assert ledger.get("a") is None
    assert ledger.entries() == []


def test_escalation_log_add_and_resolve(tmp_path: Path) -> None:
    log = EscalationLog(GitNotesStore(tmp_path))
    record = log.add("a", "merge conflict persisted", "conflict", diff="<<<<<<<")

    assert record.id.startswith("esc-")
    assert log.open_for("a").id == record.id

    resolved = log.resolve(record.id)
    assert resolved is not None and resolved.resolved is True
    assert log.entries() == []
    assert len(log.entries(include_resolved=True)) == 1
    assert log.resolve(record.id) is None
