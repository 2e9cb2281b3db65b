from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from conductor import queue
from conductor.errors import ConductorError, InvalidTransition, LockContention
from conductor.learning import LearningStore
from conductor.models import ImprovementRecord, RetryPolicy, Status, WorkItem
from conductor.pool import AgentPool
from conductor.queue import Intent, QueueState
from conductor.state.records import WorkRecordStore
from conductor.tracker.base import DependencyGraph
from conductor.tracker.insights import GraphInsights
from conductor.workers import WorkerCapability

logger = logging.getLogger(__name__)

IntentHandler = Callable[[list[Intent]], None]


@dataclass(slots=True)
class DispatchReport:
    dispatched: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)


def dependents_count(state: QueueState) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in state.items.values():
        for dep in item.dependencies:
            counts[dep] = counts.get(dep, 0) + 1
    return counts


def build_task_description(item: WorkItem, learnings: list[ImprovementRecord]) -> str:
    sections = [f"Work item {item.id}: {item.title}"]
    if item.description.strip():
        sections.append(item.description.strip())
    if item.predicted_resources:
        sections.append("Expected to touch: " + ", ".join(sorted(item.predicted_resources)))
    recovery = item.context.get("recovery")
    if isinstance(recovery, dict) and recovery.get("instruction"):
        sections.append(str(recovery["instruction"]))
    diff = item.context.get("conflict_diff")
    if diff:
        sections.append(
            "A previous attempt conflicted with concurrent work. Reconcile both change sets; "
            "do not overwrite the other side.\nConflict diff:\n" + str(diff)
        )
    elif item.last_failure:
        sections.append(f"The previous attempt failed: {item.last_failure}")
    guidance = LearningStore.guidance(learnings)
    if guidance:
        sections.append(guidance)
    return "\n\n".join(sections)


class Scheduler:
    """Fills free pool slots with the most valuable dispatchable items.

    Workers are spawned without being awaited; the orchestrator polls their
    handles on later ticks.
    """

    def __init__(
        self,
        records: WorkRecordStore,
        tracker: DependencyGraph,
        pool: AgentPool,
        worker: WorkerCapability,
        learning: LearningStore,
        retry_policy: RetryPolicy,
        *,
        insights: GraphInsights | None = None,
        run_id: str | None = None,
        blocked_items_conflict: bool = False,
        on_intents: IntentHandler | None = None,
    ) -> None:
        self.records = records
        self.tracker = tracker
        self.pool = pool
        self.worker = worker
        self.learning = learning
        self.retry_policy = retry_policy
        self.insights = insights
        self.run_id = run_id
        self.blocked_items_conflict = blocked_items_conflict
        self.on_intents = on_intents

    def _emit(self, intents: list[Intent]) -> None:
        if self.on_intents is not None and intents:
            self.on_intents(intents)

    def candidates(
        self, snapshot: QueueState, cycles: list[list[str]]
    ) -> list[WorkItem]:
        local = queue.dispatchable(snapshot, cycles)
        tracker_ready = {item.id for item in self.tracker.list_ready()}
        # An empty or degraded tracker answer is permissive; the record store
        # still enforces dependency closure.
        if tracker_ready and not self.tracker.degraded:
            local = [item for item in local if item.id in tracker_ready]
        return self.rank(snapshot, local)

    def rank(self, snapshot: QueueState, items: list[WorkItem]) -> list[WorkItem]:
        counts: dict[str, int] = {}
        if self.insights is not None and self.insights.available():
            counts = self.insights.unblock_counts()
        if counts:
            local_counts = dependents_count(snapshot)
            return sorted(
                items,
                key=lambda item: (
                    -counts.get(item.id, local_counts.get(item.id, 0)),
                    item.priority,
                    item.sequence,
                ),
            )
        return sorted(items, key=lambda item: (item.priority, item.sequence))

    def occupied_resources(self, snapshot: QueueState) -> set[str]:
        statuses = {Status.IN_PROGRESS}
        if self.blocked_items_conflict:
            statuses.add(Status.BLOCKED)
        return {
            path
            for item in snapshot.items.values()
            if item.status in statuses
            for path in item.predicted_resources
        }

    def dispatch_pass(self, cycles: list[list[str]] | None = None) -> DispatchReport:
        report = DispatchReport()
        if not self.pool.available():
            return report
        snapshot = self.records.snapshot()
        detected = list(cycles or []) + queue.find_cycles(snapshot)
        occupied = self.occupied_resources(snapshot)

        for item in self.candidates(snapshot, detected):
            slot = self.pool.first_available()
            if slot is None:
                break
            if self.retry_policy.exhausted(item.attempt):
                self._fail_exhausted(item, report)
                continue
            overlap = item.predicted_resources & occupied
            if overlap:
                report.skipped[item.id] = "resource overlap: " + ", ".join(sorted(overlap))
                continue
            learnings = self.learning.top_for(item)
            try:
                transition = self.records.dispatch(
                    item.id, slot.slot_index, run_id=self.run_id, cycles=detected
                )
            except LockContention as exc:
                report.skipped[item.id] = str(exc)
                continue
            except InvalidTransition as exc:
                report.skipped[item.id] = exc.reason or str(exc)
                continue

            dispatched = transition.state.items[item.id]
            spawn = next(intent for intent in transition.intents if intent.kind == "spawn")
            self.pool.bind(slot.slot_index, item.id)
            recovery = dispatched.context.get("recovery")
            try:
                handle = self.worker.spawn(
                    dispatched,
                    build_task_description(dispatched, learnings),
                    learnings,
                    recovery if isinstance(recovery, dict) else None,
                    fresh=bool(spawn.payload.get("fresh")),
                )
            except (ConductorError, OSError) as exc:
                self.pool.release(slot.slot_index)
                self.records.requeue(item.id, reason=f"spawn failed: {exc}")
                report.skipped[item.id] = f"spawn failed: {exc}"
                continue
            self.pool.attach(slot.slot_index, handle)
            occupied |= dispatched.predicted_resources
            report.dispatched.append(item.id)
            self._emit([intent for intent in transition.intents if intent.kind != "spawn"])
            logger.info(
                "Dispatched %s to slot %d (attempt %d)",
                item.id,
                slot.slot_index,
                dispatched.attempt,
            )
        return report

    def _fail_exhausted(self, item: WorkItem, report: DispatchReport) -> None:
        try:
            transition = self.records.fail(
                item.id,
                reason=f"retry budget exhausted after {item.attempt} attempt(s)",
                source="retry_exhausted",
            )
        except InvalidTransition as exc:
            report.skipped[item.id] = str(exc)
            return
        report.failed.append(item.id)
        self._emit(transition.intents)
