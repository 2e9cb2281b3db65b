from pathlib import Path
from typing import Any

from conductor.errors import ConductorError
from conductor.learning import LearningStore
from conductor.models import Capability, ImprovementRecord, RetryPolicy, Status, WorkItem
from conductor.pool import AgentPool
from conductor.queue import Intent
from conductor.scheduler import Scheduler, build_task_description
from conductor.state import GitNotesStore, WorkRecordStore
from conductor.tracker import DependencyGraph, DependencyTree, GraphInsights, LocalTracker
from conductor.workers import TaskHandle, WorkerCapability


class RecordingWorker(WorkerCapability):
    """Hands back idle handles so slots stay busy until a test releases them."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.spawned: list[dict[str, Any]] = []
        self.fail_for = fail_for or set()

    def spawn(
        self,
        item: WorkItem,
        task_description: str,
        learnings: list[ImprovementRecord],
        recovery_context: dict[str, Any] | None,
        *,
        fresh: bool = False,
    ) -> TaskHandle:
        if item.id in self.fail_for:
            raise ConductorError(f"cannot start worker for {item.id}")
        self.spawned.append(
            {
                "item_id": item.id,
                "description": task_description,
                "learnings": learnings,
                "recovery": recovery_context,
                "fresh": fresh,
            }
        )
        return TaskHandle(item.id)


class ReadySetTracker(DependencyGraph):
    """Tracker that answers `ready` like `bd ready`: open items with closed blockers."""

    def __init__(self, records: WorkRecordStore, *, degraded: bool = False) -> None:
        self.records = records
        self._degraded = degraded
        self.ready_calls = 0

    @property
    def degraded(self) -> bool:
        return self._degraded

    def list_all(self) -> list[WorkItem]:
        return self.records.items()

    def list_ready(self) -> list[WorkItem]:
        self.ready_calls += 1
        if self._degraded:
            return []
        snapshot = self.records.snapshot()
        return [
            item
            for item in snapshot.partition(Status.READY)
            if all(
                snapshot.items.get(dep) is not None
                and snapshot.items[dep].status is Status.COMPLETED
                for dep in item.dependencies
            )
        ]

    def dependency_tree(self, item_id: str) -> DependencyTree:
        return DependencyTree(root=item_id)

    def cycle_check(self) -> list[list[str]]:
        return []

    def update_status(self, item_id: str, status: Status) -> bool:
        return True

    def close(self, item_id: str, reason: str) -> bool:
        return True

    def create(
        self, title: str, kind: Capability, deps: list[str], *, description: str = ""
    ) -> WorkItem | None:
        return None


class FixedInsights(GraphInsights):
    def __init__(self, counts: dict[str, int]) -> None:
        super().__init__(Path("."))
        self.counts = counts

    def available(self) -> bool:
        return True

    def unblock_counts(self) -> dict[str, int]:
        return dict(self.counts)


def _scheduler(
    tmp_path: Path,
    items: list[WorkItem],
    *,
    pool_size: int = 5,
    worker: RecordingWorker | None = None,
    tracker: DependencyGraph | None = None,
    insights: GraphInsights | None = None,
    retry_policy: RetryPolicy | None = None,
    intents: list[Intent] | None = None,
) -> Scheduler:
    state = GitNotesStore(tmp_path)
    records = WorkRecordStore(state)
    records.add_items(items)
    return Scheduler(
        records,
        tracker or LocalTracker(records),
        AgentPool(pool_size),
        worker or RecordingWorker(),
        LearningStore(state),
        retry_policy or RetryPolicy(max_attempts=3, backoff_seconds=0),
        insights=insights,
        run_id="run-test",
        on_intents=intents.extend if intents is not None else None,
    )


def _finish(scheduler: Scheduler, item_id: str) -> None:
    slot = scheduler.pool.slot_for(item_id)
    assert slot is not None
    scheduler.pool.release(slot.slot_index)
    scheduler.records.complete(item_id, commit_ref=f"ref-{item_id}")


def test_item_without_dependencies_dispatches_on_first_tick(tmp_path: Path) -> None:
    worker = RecordingWorker()
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="X", title="Build X", predicted_resources={"f.ts"})],
        pool_size=1,
        worker=worker,
    )

    report = scheduler.dispatch_pass()

    assert report.dispatched == ["X"]
    assert scheduler.records.get("X").status is Status.IN_PROGRESS
    assert scheduler.pool.slot_for("X").slot_index == 0
    assert scheduler.pool.available() == []
    assert worker.spawned[0]["item_id"] == "X"
    assert "Build X" in worker.spawned[0]["description"]
    assert "f.ts" in worker.spawned[0]["description"]


def test_dependent_dispatches_once_tracker_reports_it_ready(tmp_path: Path) -> None:
    state_items = [WorkItem(id="A", title="A"), WorkItem(id="B", title="B", dependencies={"A"})]
    scheduler = _scheduler(tmp_path, state_items)
    tracker = ReadySetTracker(scheduler.records)
    scheduler.tracker = tracker

    assert [item.id for item in tracker.list_ready()] == ["A"]
    first = scheduler.dispatch_pass()
    assert first.dispatched == ["A"]
    assert scheduler.records.get("B").status is Status.READY

    _finish(scheduler, "A")

    assert [item.id for item in tracker.list_ready()] == ["B"]
    second = scheduler.dispatch_pass()
    assert second.dispatched == ["B"]


def test_shared_resource_serializes_dispatch(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [
            WorkItem(id="C", title="C", predicted_resources={"shared.go"}),
            WorkItem(id="D", title="D", predicted_resources={"shared.go"}),
        ],
        pool_size=2,
    )

    first = scheduler.dispatch_pass()
    assert first.dispatched == ["C"]
    assert "resource overlap" in first.skipped["D"]
    assert len(scheduler.pool.available()) == 1

    again = scheduler.dispatch_pass()
    assert again.dispatched == []

    _finish(scheduler, "C")
    assert scheduler.dispatch_pass().dispatched == ["D"]


def test_slot_conservation_across_dispatch_and_release(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path, [WorkItem(id=f"w{index}", title=str(index)) for index in range(4)], pool_size=3
    )
    pool = scheduler.pool

    scheduler.dispatch_pass()
    assert len(pool.available()) + len(pool.busy()) == 3
    assert len(pool.busy()) == 3
    assert scheduler.records.get("w3").status is Status.READY

    _finish(scheduler, "w0")
    assert len(pool.available()) + len(pool.busy()) == 3
    scheduler.dispatch_pass()
    assert [slot.bound_item_id for slot in pool.busy()] == ["w3", "w1", "w2"]


def test_exhausted_item_is_failed_instead_of_dispatched(tmp_path: Path) -> None:
    intents: list[Intent] = []
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="R", title="R", attempt=2)],
        retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
        intents=intents,
    )

    report = scheduler.dispatch_pass()

    assert report.dispatched == []
    assert report.failed == ["R"]
    assert scheduler.records.get("R").status is Status.FAILED
    assert any(
        intent.kind == "escalate" and intent.payload["source"] == "retry_exhausted"
        for intent in intents
    )


def test_retry_cap_bounds_dispatch_count(tmp_path: Path) -> None:
    worker = RecordingWorker()
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="R", title="R")],
        worker=worker,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0),
    )

    for _ in range(5):
        scheduler.dispatch_pass()
        slot = scheduler.pool.slot_for("R")
        if slot is not None:
            scheduler.pool.release(slot.slot_index)
            scheduler.records.requeue("R", reason="tests failed")

    assert len(worker.spawned) == 3
    assert scheduler.records.get("R").status is Status.FAILED


def test_ranking_prefers_unblock_count_when_insights_available(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="p", title="P", priority=0), WorkItem(id="q", title="Q", priority=3)],
        pool_size=1,
        insights=FixedInsights({"q": 4, "p": 0}),
    )

    assert scheduler.dispatch_pass().dispatched == ["q"]


def test_ranking_falls_back_to_priority_then_insertion(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [
            WorkItem(id="first", title="1", priority=2),
            WorkItem(id="urgent", title="2", priority=0),
            WorkItem(id="second", title="3", priority=2),
        ],
        pool_size=3,
    )

    report = scheduler.dispatch_pass()

    assert report.dispatched == ["urgent", "first", "second"]


def test_tracker_ready_set_filters_candidates(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="a", title="A"), WorkItem(id="b", title="B")],
    )

    class OnlyB(ReadySetTracker):
        def list_ready(self) -> list[WorkItem]:
            return [item for item in super().list_ready() if item.id == "b"]

    scheduler.tracker = OnlyB(scheduler.records)
    assert scheduler.dispatch_pass().dispatched == ["b"]


def test_degraded_tracker_is_permissive(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="a", title="A"), WorkItem(id="b", title="B", dependencies={"a"})],
    )
    scheduler.tracker = ReadySetTracker(scheduler.records, degraded=True)

    # Dependency closure is still enforced by the record store.
    assert scheduler.dispatch_pass().dispatched == ["a"]


def test_learnings_are_injected_into_the_task(tmp_path: Path) -> None:
    worker = RecordingWorker()
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="a", title="A", kind=Capability.DATA_LAYER)],
        worker=worker,
    )
    scheduler.learning.record_failure(
        WorkItem(id="old", title="old", kind=Capability.DATA_LAYER),
        "ModuleNotFoundError: No module named 'orm'",
    )

    scheduler.dispatch_pass()

    spawned = worker.spawned[0]
    assert spawned["learnings"][0].category == "imports"
    assert "Avoid these known mistakes:" in spawned["description"]


def test_spawn_failure_frees_slot_and_requeues(tmp_path: Path) -> None:
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="a", title="A")],
        worker=RecordingWorker(fail_for={"a"}),
    )

    report = scheduler.dispatch_pass()

    assert report.dispatched == []
    assert "spawn failed" in report.skipped["a"]
    assert scheduler.pool.busy() == []
    item = scheduler.records.get("a")
    assert item.status is Status.READY
    assert scheduler.records.snapshot().locks == {}


def test_fresh_flag_reaches_the_worker(tmp_path: Path) -> None:
    worker = RecordingWorker()
    scheduler = _scheduler(
        tmp_path,
        [WorkItem(id="a", title="A", context={"fresh_start": True})],
        worker=worker,
    )

    scheduler.dispatch_pass()

    assert worker.spawned[0]["fresh"] is True
    assert "fresh_start" not in scheduler.records.get("a").context


def test_task_description_carries_recovery_and_conflict_notes() -> None:
    item = WorkItem(
        id="a",
        title="Add endpoint",
        description="Expose /health.",
        context={
            "recovery": {"instruction": "Resume from step 3."},
            "conflict_diff": "<<<<<<< HEAD",
        },
    )

    text = build_task_description(item, [])

    assert text.startswith("Work item a: Add endpoint")
    assert "Expose /health." in text
    assert "Resume from step 3." in text
    assert "<<<<<<< HEAD" in text
    assert "Avoid these known mistakes" not in text
