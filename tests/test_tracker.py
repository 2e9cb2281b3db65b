import json
import stat
from pathlib import Path

import pytest

from conductor.config import TrackerConfig
from conductor.models import Capability, Status, WorkItem
from conductor.state import GitNotesStore, WorkRecordStore
from conductor.tracker import (
    BeadsTracker,
    GraphInsights,
    LocalTracker,
    build_tracker,
    load_graph_file,
)
from conductor.tracker.beads import issue_to_item, parse_cycles

ISSUES = [
    {"id": "bd-1", "title": "Schema", "labels": ["kind:data-layer"], "status": "open"},
    {
        "id": "bd-2",
        "title": "API",
        "labels": ["interface-layer", "file:api.py"],
        "description": "Files:\n- `routes.py`\n- models.py\n\nTest: `pytest tests/test_api.py`",
        "dependencies": [
            {"depends_on_id": "bd-1", "type": "blocks"},
            {"depends_on_id": "bd-9", "type": "related"},
        ],
        "priority": "1",
        "status": "open",
    },
]


def _write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def _fake_bd(tmp_path: Path) -> Path:
    issues = json.dumps(ISSUES)
    ready = json.dumps({"issues": ISSUES[:1]})
    return _write_script(
        tmp_path / "bd",
        f"""echo "$@" >> "{tmp_path / 'calls.log'}"
case "$1" in
  list) printf '%s\\n' '{issues}' ;;
  ready) printf '%s\\n' '{ready}' ;;
  dep) echo '{{"cycles": [["bd-5", "bd-6", "bd-5"]]}}' ;;
  update|close) exit 0 ;;
  *) echo "unknown command" >&2; exit 1 ;;
esac
""",
    )


def test_issue_to_item_reads_labels_and_description() -> None:
    item = issue_to_item(ISSUES[1])

    assert item.kind is Capability.INTERFACE_LAYER
    assert item.predicted_resources == {"api.py", "routes.py", "models.py"}
    assert item.dependencies == {"bd-1"}
    assert item.test_command == "pytest tests/test_api.py"
    assert item.priority == 1
    assert item.status is Status.READY

    closed = issue_to_item({"id": "bd-3", "status": "closed", "issue_type": "test"})
    assert closed.status is Status.COMPLETED
    assert closed.kind is Capability.TEST
    assert closed.title == "bd-3"


def test_parse_cycles_accepts_several_shapes() -> None:
    payload = {"cycles": [["a", "b", "a"], {"path": [{"id": "c"}, {"id": "d"}]}, "junk"]}

    assert parse_cycles(payload) == [["a", "b"], ["c", "d"]]
    assert parse_cycles(None) == []


def test_beads_tracker_queries_the_cli(tmp_path: Path) -> None:
    tracker = BeadsTracker(tmp_path, binary=str(_fake_bd(tmp_path)))

    assert tracker.available() is True
    assert [item.id for item in tracker.list_all()] == ["bd-1", "bd-2"]
    assert [item.id for item in tracker.list_ready()] == ["bd-1"]
    assert tracker.cycle_check() == [["bd-5", "bd-6"]]
    tree = tracker.dependency_tree("bd-2")
    assert sorted(tree.nodes) == ["bd-1", "bd-2"]
    assert tree.edges == [("bd-2", "bd-1")]
    assert tracker.update_status("bd-1", Status.IN_PROGRESS) is True
    assert tracker.update_status("bd-1", Status.COMPLETED) is True
    assert tracker.degraded is False

    calls = (tmp_path / "calls.log").read_text(encoding="utf-8").splitlines()
    assert "update bd-1 --status in_progress" in calls
    assert "close bd-1 --reason completed by conductor" in calls


def test_beads_tracker_degrades_when_cli_fails(tmp_path: Path) -> None:
    tracker = BeadsTracker(tmp_path, binary=str(_fake_bd(tmp_path)))

    assert tracker.create("New", Capability.TEST, []) is None
    assert tracker.degraded is True

    tracker.list_all()
    assert tracker.degraded is False


def test_beads_tracker_without_binary_is_permissive(tmp_path: Path) -> None:
    tracker = BeadsTracker(tmp_path, binary="definitely-not-installed-bd")

    assert tracker.available() is False
    assert tracker.list_ready() == []
    assert tracker.degraded is True
    assert tracker.cycle_check() == []
    assert tracker.close("bd-1", "done") is False


def test_build_tracker_falls_back_to_local_graph(tmp_path: Path) -> None:
    records = WorkRecordStore(GitNotesStore(tmp_path))

    tracker = build_tracker(
        TrackerConfig(backend="beads", binary="definitely-not-installed-bd"), tmp_path, records
    )

    assert isinstance(tracker, LocalTracker)
    local = build_tracker(TrackerConfig(backend="local"), tmp_path, records)
    assert isinstance(local, LocalTracker)


def test_local_tracker_tracks_the_record_store(tmp_path: Path) -> None:
    records = WorkRecordStore(GitNotesStore(tmp_path))
    records.add_items(
        [
            WorkItem(id="a", title="A"),
            WorkItem(id="b", title="B", dependencies={"a"}),
            WorkItem(id="x", title="X", dependencies={"y"}),
            WorkItem(id="y", title="Y", dependencies={"x"}),
        ]
    )
    tracker = LocalTracker(records)

    assert [item.id for item in tracker.list_ready()] == ["a"]
    assert tracker.cycle_check() == [["x", "y"]]
    assert tracker.dependency_tree("b").edges == [("b", "a")]

    created = tracker.create("Follow-up", Capability.TEST, ["b"])
    assert created is not None
    assert created.id.startswith("local-")
    assert created.dependencies == {"b"}
    assert records.get(created.id) is not None


def test_load_graph_file_normalizes_entries(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text(
        json.dumps(
            {
                "items": [
                    {"id": "a", "title": "A", "resources": ["db.py"], "attempt": 4},
                    {"id": "b", "deps": ["a"], "status": "completed", "kind": "test"},
                ]
            }
        ),
        encoding="utf-8",
    )

    first, second = load_graph_file(path)

    assert first.predicted_resources == {"db.py"}
    assert first.attempt == 0
    assert second.dependencies == {"a"}
    assert second.status is Status.COMPLETED
    assert second.kind is Capability.TEST
    assert second.title == "b"


def test_load_graph_file_rejects_entries_without_id(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text(json.dumps([{"title": "nameless"}]), encoding="utf-8")

    with pytest.raises(ValueError, match="missing an id"):
        load_graph_file(path)


def test_graph_insights_parse_plan_and_report(tmp_path: Path) -> None:
    plan = json.dumps(
        {"plan": {"tracks": [{"items": [{"id": "a", "unblocks": ["b", "c"]}, {"id": "b"}]}]}}
    )
    report = json.dumps({"bottlenecks": [{"id": "a"}], "cycles": [{"path": ["x", "y"]}]})
    binary = _write_script(
        tmp_path / "bv",
        f"""case "$1" in
  --robot-plan) echo '{plan}' ;;
  --robot-insights) echo '{report}' ;;
  *) exit 2 ;;
esac
""",
    )
    insights = GraphInsights(tmp_path, binary=str(binary))

    assert insights.unblock_counts() == {"a": 2, "b": 0}
    assert insights.execution_plan() == [["a", "b"]]
    result = insights.insights()
    assert result.bottlenecks == ["a"]
    assert result.cycles == [["x", "y"]]
    assert insights.priority_recommendations() == []


def test_graph_insights_absent_or_disabled_reports_nothing(tmp_path: Path) -> None:
    missing = GraphInsights(tmp_path, binary="definitely-not-installed-bv")
    disabled = GraphInsights(tmp_path, binary="sh", enabled=False)

    for insights in (missing, disabled):
        assert insights.available() is False
        assert insights.unblock_counts() == {}
        assert insights.execution_plan() == []
        assert insights.insights().cycles == []
