from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor import queue
from conductor.backends import build_backend
from conductor.config import ConductorConfig
from conductor.conflicts import ConflictResolver
from conductor.errors import (
    ConductorError,
    CycleDetected,
    EscalationRequired,
    MergeConflict,
    StateStoreError,
    VersionControlError,
    WorkerCrash,
)
from conductor.learning import LearningStore
from conductor.models import RetryPolicy, Status, WorkItem, utcnow_iso
from conductor.pool import AgentPool
from conductor.queue import Intent
from conductor.recovery import SKIPPED, CheckpointRecovery
from conductor.scheduler import DispatchReport, Scheduler
from conductor.state import CheckpointLedger, EscalationLog, GitNotesStore, WorkRecordStore
from conductor.tracker import DependencyGraph, GraphInsights, build_insights, build_tracker
from conductor.validation import ValidationPipeline
from conductor.vcs import MergeOutcome, VersionControl, build_vcs
from conductor.workers import AgentWorker, TaskHandle, WorkerCapability

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str = ""
    status: str = "in_progress"
    ticks: int = 0
    dispatched: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    requeued: int = 0
    recovered: int = 0
    escalations: int = 0
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Orchestrator:
    """Heartbeat loop: dispatch, monitor and reconcile workers, report, sleep."""

    def __init__(
        self,
        *,
        state: GitNotesStore,
        tracker: DependencyGraph,
        worker: WorkerCapability,
        vcs: VersionControl,
        config: ConductorConfig,
        insights: GraphInsights | None = None,
        records: WorkRecordStore | None = None,
        checkpoints: CheckpointLedger | None = None,
    ) -> None:
        self.state = state
        self.config = config
        self.records = records or WorkRecordStore(state)
        self.checkpoints = checkpoints or CheckpointLedger(state)
        self.escalations = EscalationLog(state)
        self.tracker = tracker
        self.insights = insights
        self.worker = worker
        self.vcs = vcs
        self.retry_policy: RetryPolicy = config.retry.policy()
        self.pool = AgentPool(config.pool.size)
        self.learning = LearningStore(
            state,
            top_n=config.learning.top_n,
            trend_window_hours=config.learning.trend_window_hours,
        )
        self.validation = ValidationPipeline(
            config.project, config.validation, vcs, self.records, state
        )
        self.resolver = ConflictResolver(
            self.records,
            checkpoints=self.checkpoints,
            include_blocked=config.scheduler.blocked_items_conflict,
        )
        self.recovery = CheckpointRecovery(
            self.records, self.checkpoints, retry_policy=self.retry_policy
        )
        self.scheduler = Scheduler(
            self.records,
            tracker,
            self.pool,
            worker,
            self.learning,
            self.retry_policy,
            insights=insights,
            blocked_items_conflict=config.scheduler.blocked_items_conflict,
            on_intents=self.handle_intents,
        )
        self.heartbeat_seconds = max(0.0, float(config.pool.heartbeat_seconds))
        self.worker_timeout_seconds = float(config.pool.worker_timeout_seconds)
        self._cycles: list[list[str]] = []
        self._summary: RunSummary | None = None

    @classmethod
    def from_config(
        cls,
        repo_root: Path,
        config: ConductorConfig,
        *,
        state: GitNotesStore | None = None,
        tracker: DependencyGraph | None = None,
        worker: WorkerCapability | None = None,
        vcs: VersionControl | None = None,
    ) -> Orchestrator:
        state = state or GitNotesStore(
            repo_root, backend_mode=config.state.backend, branch_ref=config.state.branch_ref
        )
        records = WorkRecordStore(state)
        checkpoints = CheckpointLedger(state)
        vcs = vcs or build_vcs(repo_root)
        if worker is None:

            def _record_backend_event(event: dict[str, Any]) -> None:
                if str(event.get("event", "")).startswith("backend_"):
                    state.append_metric_event("backend_events", {**event, "at": utcnow_iso()})

            backend = build_backend(config.backend, repo_root, event_hook=_record_backend_event)
            worker = AgentWorker(
                backend, vcs, checkpoints, model=config.agents.worker_model or None
            )
        return cls(
            state=state,
            tracker=tracker or build_tracker(config.tracker, repo_root, records),
            worker=worker,
            vcs=vcs,
            config=config,
            insights=build_insights(config.tracker, repo_root),
            records=records,
            checkpoints=checkpoints,
        )

    # Leases and run records

    def _lease_ttl(self) -> float:
        return max(60.0, self.worker_timeout_seconds, self.heartbeat_seconds * 6)

    def _upsert_run_record(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id, {})
            if not isinstance(run, dict):
                run = {}
            run.update(updates)
            runs[run_id] = run
            return runs

        self.state.update_json("runs", _updater, default={})

    def _acquire_run_lease(self, run_id: str) -> None:
        now_epoch = time.time()
        now_iso = utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict):
                active_run = str(active.get("run_id", ""))
                active_expiry = float(active.get("expires_epoch", 0))
                if active_run and active_run != run_id and active_expiry > now_epoch:
                    raise StateStoreError(
                        f"Run {active_run} still holds the orchestrator lease. "
                        "Wait for it to finish or for the lease to expire."
                    )
            leases["active"] = {
                "run_id": run_id,
                "heartbeat_at": now_iso,
                "expires_epoch": now_epoch + self._lease_ttl(),
            }
            return leases

        self.state.update_json("leases", _updater, default={})
        self._upsert_run_record(
            run_id,
            {"run_id": run_id, "started_at": now_iso, "heartbeat_at": now_iso, "status": "running"},
        )

    def _heartbeat_run(self, run_id: str) -> None:
        now_iso = utcnow_iso()
        expires_epoch = time.time() + self._lease_ttl()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if not isinstance(active, dict) or str(active.get("run_id", "")) != run_id:
                active = {"run_id": run_id}
            active["heartbeat_at"] = now_iso
            active["expires_epoch"] = expires_epoch
            leases["active"] = active
            return leases

        self.state.update_json("leases", _updater, default={})

    def _release_run_lease(self, run_id: str, *, status: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict) and str(active.get("run_id", "")) == run_id:
                leases["active"] = None
            return leases

        self.state.update_json("leases", _updater, default={})
        self._upsert_run_record(run_id, {"status": status, "ended_at": utcnow_iso()})

    # Intents

    def handle_intents(self, intents: list[Intent]) -> None:
        for intent in intents:
            if intent.kind == "tracker_status":
                self.tracker.update_status(intent.item_id, Status(intent.payload["status"]))
            elif intent.kind == "tracker_close":
                ref = intent.payload.get("commit_ref") or "no commit"
                self.tracker.close(intent.item_id, f"completed by conductor ({ref})")
            elif intent.kind == "escalate":
                self._escalate(
                    intent.item_id,
                    str(intent.payload.get("reason", "")),
                    str(intent.payload.get("source", "")),
                    str(intent.payload.get("diff", "")),
                )
            elif intent.kind == "cycle_blocked":
                if self.escalations.open_for(intent.item_id) is None:
                    self._escalate(intent.item_id, "item is on a dependency cycle", "cycle")
            else:
                logger.debug("%s: %s %s", intent.item_id, intent.kind, intent.payload)

    def _escalate(self, item_id: str, reason: str, source: str, diff: str = "") -> None:
        record = self.escalations.add(item_id, reason, source, diff)
        logger.warning("%s", EscalationRequired(item_id, reason, escalation_id=record.id))
        self.state.increment_metric("escalations")
        if self._summary is not None:
            self._summary.escalations += 1

    # Graph sync

    def sync_graph(self) -> list[list[str]]:
        """Pull the tracker's items into the record store and block cycle members."""
        items = self.tracker.list_all()
        if items:
            self.handle_intents(self.records.add_items(items))
        cycles = [list(cycle) for cycle in self.tracker.cycle_check()]
        if self.insights is not None:
            cycles.extend(self.insights.insights().cycles)
        cycles.extend(queue.find_cycles(self.records.snapshot()))
        unique: list[list[str]] = []
        for cycle in cycles:
            if sorted(cycle) not in (sorted(known) for known in unique):
                unique.append(cycle)
        if unique:
            logger.warning("%s", CycleDetected(unique))
        self.handle_intents(self.records.apply_cycle_blocks(unique).intents)
        self._cycles = unique
        return unique

    # Reconciliation

    def _retry_or_fail(self, item: WorkItem, reason: str) -> None:
        summary = self._summary
        if self.retry_policy.exhausted(item.attempt):
            transition = self.records.fail(
                item.id,
                reason=f"{reason} (retry budget exhausted after {item.attempt} attempt(s))",
                source="retry_exhausted",
            )
            if summary is not None:
                summary.failed.append(item.id)
        else:
            transition = self.records.requeue(
                item.id,
                reason=reason,
                clear_context=("recovery", "conflict_diff", "conflict_paths"),
                delay_seconds=self.retry_policy.delay(item.attempt),
            )
            if summary is not None:
                summary.requeued += 1
        self.handle_intents(transition.intents)

    def _resolve_conflict(self, item_id: str, outcome: MergeOutcome) -> None:
        transition = self.resolver.resolve(item_id, outcome)
        settled = transition.state.items[item_id]
        if self._summary is not None:
            if settled.status is Status.FAILED:
                self._summary.failed.append(item_id)
            elif settled.status is Status.READY:
                self._summary.requeued += 1
        self.handle_intents(transition.intents)

    def register_discovered(self, parent_id: str, discovered: list[dict[str, Any]]) -> list[str]:
        """Create tracker items for work a worker reported outside its own item."""
        known_titles = {item.title for item in self.records.items()}
        created: list[WorkItem] = []
        for entry in discovered:
            title = entry["title"]
            if not title or title in known_titles:
                continue
            description = entry.get("description") or f"Discovered while working on {parent_id}."
            item = self.tracker.create(
                title, entry["kind"], list(entry["deps"]), description=description
            )
            if item is None:
                logger.warning("Tracker did not create discovered item %r", title)
                continue
            known_titles.add(title)
            created.append(item)
        if created:
            self.handle_intents(self.records.add_items(created))
            self.state.increment_metric("discovered", len(created))
            logger.info(
                "%s discovered %d new item(s): %s",
                parent_id,
                len(created),
                ", ".join(item.id for item in created),
            )
        return [item.id for item in created]

    def _recover(self, item_id: str, reason: str, *, backoff: bool = True) -> None:
        outcome = self.recovery.recover(item_id, reason, backoff=backoff)
        self.state.increment_metric("recoveries")
        if self._summary is not None and outcome.action != SKIPPED:
            self._summary.recovered += 1

    async def reconcile(self, item_id: str, handle: TaskHandle) -> None:
        """Settle one finished worker. Its slot has already been released."""
        try:
            worker_result = handle.result()
        except WorkerCrash as exc:
            logger.warning("%s", exc)
            self.state.increment_metric("worker_crashes")
            self._recover(item_id, str(exc))
            return
        if worker_result.discovered:
            self.register_discovered(item_id, worker_result.discovered)

        item = self.records.get(item_id)
        if item is None or item.status is not Status.IN_PROGRESS:
            return
        try:
            change_set = await asyncio.to_thread(self.vcs.change_set, item)
        except VersionControlError as exc:
            self._recover(item_id, f"could not collect changes: {exc}")
            return

        try:
            result = await self.validation.validate(item, change_set)
        except VersionControlError as exc:
            self.learning.record_failure(item, f"validation could not run: {exc}")
            self._retry_or_fail(item, f"validation could not run: {exc}")
            return
        failure = result.failure
        if result.conflict is not None:
            if failure is not None:
                self.learning.record_failure(item, failure)
            self._resolve_conflict(item_id, result.conflict)
            return
        if failure is not None:
            self.learning.record_failure(item, failure)
            self._retry_or_fail(item, str(failure))
            return

        try:
            ref = await asyncio.to_thread(self.vcs.commit, change_set)
        except MergeConflict as exc:
            self.learning.record_failure(item, f"{exc}\n{exc.diff}", gate=3)
            self._resolve_conflict(item_id, MergeOutcome.conflict(exc.diff, exc.paths))
            return
        except VersionControlError as exc:
            self._retry_or_fail(item, f"commit failed: {exc}")
            return

        advisories = [gate.reason for gate in result.advisories]
        if advisories:
            self.records.annotate(item_id, context={"quality_advisories": advisories})
        transition = self.records.complete(item_id, commit_ref=ref)
        self.checkpoints.delete(item_id)
        await asyncio.to_thread(self.vcs.discard, item)
        if self._summary is not None:
            self._summary.completed.append(item_id)
        self.handle_intents(transition.intents)
        logger.info("Completed %s at %s", item_id, ref)

    async def monitor(self) -> int:
        """Recover unresponsive workers and reconcile finished ones; returns how many settled."""
        settled = 0
        for slot in self.pool.unresponsive(self.worker_timeout_seconds):
            item_id = slot.bound_item_id
            handle = self.pool.release(slot.slot_index)
            if handle is not None:
                handle.cancel()
            if item_id:
                logger.warning("Worker for %s is unresponsive; recovering", item_id)
                self._recover(item_id, "worker unresponsive")
                settled += 1
        for slot in self.pool.poll_completed():
            item_id = slot.bound_item_id
            handle = self.pool.release(slot.slot_index)
            if item_id and handle is not None:
                try:
                    await self.reconcile(item_id, handle)
                except StateStoreError:
                    raise
                except ConductorError as exc:
                    logger.error("Could not settle %s: %s", item_id, exc)
                    self._recover(item_id, f"could not settle: {exc}")
                settled += 1
        return settled

    # Loop

    def _pending_backoff(self) -> bool:
        return bool(queue.waiting_on_backoff(self.records.snapshot(), self._cycles))

    def _dispatch(self) -> DispatchReport:
        if self.state.get_context().get("paused"):
            return DispatchReport()
        report = self.scheduler.dispatch_pass(self._cycles)
        if self._summary is not None:
            self._summary.dispatched += len(report.dispatched)
            self._summary.failed.extend(report.failed)
        if report.dispatched:
            self.state.increment_metric("dispatched", len(report.dispatched))
        for item_id, reason in report.skipped.items():
            logger.debug("Skipped %s: %s", item_id, reason)
        return report

    def _report(self, run_id: str, tick: int) -> None:
        counts = self.records.counts()
        self._heartbeat_run(run_id)

        def _update(payload: Any) -> dict[str, Any]:
            context = payload if isinstance(payload, dict) else {}
            context.update(
                {
                    "current_run_id": run_id,
                    "status": "running",
                    "tick": tick,
                    "counts": counts,
                    "busy_slots": [
                        {"slot": slot.slot_index, "item_id": slot.bound_item_id}
                        for slot in self.pool.busy()
                    ],
                    "updated_at": utcnow_iso(),
                }
            )
            return context

        self.state.update_json("context", _update, default={})

    def _finished(self) -> bool:
        if self.pool.busy():
            return False
        if self.state.get_context().get("paused"):
            return True
        stranded = self.records.release_stranded()
        if stranded.intents:
            logger.info(
                "Released %d blocked item(s) whose blocker finished without them",
                sum(1 for intent in stranded.intents if intent.kind == "unblocked"),
            )
            self.handle_intents(stranded.intents)
        # Every slot is free: one more pass decides whether anything is left to do.
        if self._dispatch().dispatched:
            return False
        return not self._pending_backoff()

    async def run(self, *, max_ticks: int | None = None) -> RunSummary:
        if self.state.get_context().get("paused"):
            raise ConductorError("Orchestrator is paused. Run `conductor resume` first.")
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        self._acquire_run_lease(run_id)
        summary = RunSummary(run_id=run_id, started_at=utcnow_iso())
        self._summary = summary
        self.scheduler.run_id = run_id
        status = "failed"
        try:
            self.sync_graph()
            for outcome in self.recovery.reconcile_orphans(set()):
                if outcome.action != SKIPPED:
                    summary.recovered += 1
            while True:
                summary.ticks += 1
                self._dispatch()
                if await self.monitor():
                    self.sync_graph()
                self._report(run_id, summary.ticks)
                if self._finished():
                    break
                if max_ticks is not None and summary.ticks >= max_ticks:
                    break
                await asyncio.sleep(self.heartbeat_seconds)
            paused = bool(self.state.get_context().get("paused"))
            status = "paused" if paused and not self.pool.busy() else "complete"
            if self.pool.busy():
                status = "stopped"
                await self.interrupt("run stopped before workers finished")
        except (KeyboardInterrupt, asyncio.CancelledError) as exc:
            status = "interrupted"
            await self.interrupt("interrupted")
            if isinstance(exc, asyncio.CancelledError):
                raise
        finally:
            summary.status = status
            summary.ended_at = utcnow_iso()
            summary.counts = self.records.counts()
            self._finish_run(run_id, summary)
            self._summary = None
        return summary

    def _finish_run(self, run_id: str, summary: RunSummary) -> None:
        def _update(payload: Any) -> dict[str, Any]:
            context = payload if isinstance(payload, dict) else {}
            context.update(
                {"status": summary.status, "counts": summary.counts, "busy_slots": []}
            )
            return context

        try:
            self.state.update_json("context", _update, default={})
            self._upsert_run_record(run_id, summary.to_dict())
            self._release_run_lease(run_id, status=summary.status)
        except StateStoreError as exc:
            logger.error("Could not record the end of %s: %s", run_id, exc)

    async def interrupt(self, reason: str) -> list[str]:
        """Stop every worker and requeue all in-progress items through recovery."""
        await self.pool.cancel_all()
        outcomes = self.recovery.reconcile_orphans(set(), reason=reason)
        return [outcome.item_id for outcome in outcomes if outcome.action != SKIPPED]

    # Operator commands

    def recover_orphans(self) -> list[dict[str, Any]]:
        leases = self.state.get_leases()
        active = leases.get("active")
        if isinstance(active, dict) and float(active.get("expires_epoch", 0)) > time.time():
            raise ConductorError(
                f"Run {active.get('run_id')} is active; orphans can only be recovered offline."
            )
        return [asdict(outcome) for outcome in self.recovery.reconcile_orphans(set())]

    def status(self, verbose: bool = False) -> dict[str, Any]:
        snapshot = self.records.snapshot()
        items: list[dict[str, Any]] = []
        for item in sorted(snapshot.items.values(), key=lambda entry: entry.sequence):
            if verbose:
                items.append(item.to_dict())
            else:
                items.append(
                    {
                        "id": item.id,
                        "title": item.title,
                        "status": item.status.value,
                        "attempt": item.attempt,
                        "conflict_attempt": item.conflict_attempt,
                    }
                )
        metrics = self.state.get_metrics()
        gate_failures = metrics.get("gate_failures", [])
        if not isinstance(gate_failures, list):
            gate_failures = []
        payload: dict[str, Any] = {
            "context": self.state.get_context(),
            "counts": {status.value: len(snapshot.partition(status)) for status in Status},
            "items": items,
            "locks": {item_id: lock.to_dict() for item_id, lock in snapshot.locks.items()},
            "escalations": [record.to_dict() for record in self.escalations.entries()],
            "recent_gate_failures": gate_failures[-5:],
            "leases": self.state.get_leases(),
        }
        if verbose:
            payload["metrics"] = metrics
            payload["runs"] = self.state.get_runs()
            payload["checkpoints"] = [entry.to_dict() for entry in self.checkpoints.entries()]
            payload["invariant_violations"] = queue.check_invariants(snapshot)
        return payload

    def pause(self) -> None:
        context = self.state.get_context()
        context["paused"] = True
        context["status"] = "paused"
        self.state.set_context(context)

    def resume(self) -> None:
        context = self.state.get_context()
        context["paused"] = False
        context["status"] = "ready"
        self.state.set_context(context)
