"""Work-queue state machine.

Every transition is a pure function: it receives a :class:`QueueState`, returns
a new one and lists the side effects (``Intent``) the caller must perform once
the new state is durable. Nothing in this module touches storage, workers or
the tracker.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from conductor.errors import InvalidTransition, LockContention
from conductor.models import (
    MAX_CONFLICT_ATTEMPT,
    Lock,
    Status,
    WorkItem,
    parse_iso,
    utcnow_iso,
)

ALLOWED_TRANSITIONS: dict[Status, set[Status]] = {
    Status.READY: {Status.IN_PROGRESS, Status.BLOCKED, Status.FAILED},
    Status.IN_PROGRESS: {Status.COMPLETED, Status.READY, Status.BLOCKED, Status.FAILED},
    Status.BLOCKED: {Status.READY, Status.FAILED},
    Status.COMPLETED: set(),
    Status.FAILED: set(),
}


@dataclass(slots=True)
class Intent:
    kind: str
    item_id: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueState:
    items: dict[str, WorkItem] = field(default_factory=dict)
    locks: dict[str, Lock] = field(default_factory=dict)
    next_sequence: int = 1

    def copy(self) -> QueueState:
        return copy.deepcopy(self)

    def item(self, item_id: str) -> WorkItem:
        try:
            return self.items[item_id]
        except KeyError as exc:
            raise InvalidTransition(item_id, "missing", "any", "unknown work item") from exc

    def partition(self, status: Status) -> list[WorkItem]:
        items = [item for item in self.items.values() if item.status is status]
        return sorted(items, key=lambda item: item.sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in sorted(self.items.values(), key=_seq)],
            "locks": {item_id: lock.to_dict() for item_id, lock in self.locks.items()},
            "next_sequence": self.next_sequence,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> QueueState:
        if not isinstance(payload, dict):
            return cls()
        items: dict[str, WorkItem] = {}
        for raw in payload.get("items", []) or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            item = WorkItem.from_dict(raw)
            items[item.id] = item
        locks: dict[str, Lock] = {}
        raw_locks = payload.get("locks", {})
        if isinstance(raw_locks, dict):
            for item_id, raw in raw_locks.items():
                if isinstance(raw, dict):
                    locks[str(item_id)] = Lock.from_dict(raw)
        next_sequence = int(payload.get("next_sequence", 0) or 0)
        if items:
            next_sequence = max(next_sequence, max(item.sequence for item in items.values()) + 1)
        return cls(items=items, locks=locks, next_sequence=max(1, next_sequence))


@dataclass(slots=True)
class Transition:
    state: QueueState
    intents: list[Intent] = field(default_factory=list)


def _seq(item: WorkItem) -> int:
    return item.sequence


def _check_edge(item: WorkItem, target: Status, reason: str = "") -> None:
    if target not in ALLOWED_TRANSITIONS[item.status]:
        raise InvalidTransition(item.id, item.status.value, target.value, reason)


def dependencies_completed(state: QueueState, item: WorkItem) -> bool:
    for dep_id in item.dependencies:
        dep = state.items.get(dep_id)
        if dep is None or dep.status is not Status.COMPLETED:
            return False
    return True


def find_cycles(state: QueueState) -> list[list[str]]:
    """Return the strongly connected components that form dependency cycles."""
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    counter = 0

    for root in sorted(state.items):
        if root in index_of:
            continue
        work: list[tuple[str, list[str]]] = [(root, sorted(state.items[root].dependencies))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, pending = work[-1]
            if pending:
                dep = pending.pop()
                if dep not in state.items:
                    continue
                if dep not in index_of:
                    index_of[dep] = lowlink[dep] = counter
                    counter += 1
                    stack.append(dep)
                    on_stack.add(dep)
                    work.append((dep, sorted(state.items[dep].dependencies)))
                elif dep in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[dep])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in state.items[node].dependencies:
                    cycles.append(sorted(component))
    return cycles


def cycle_members(cycles: list[list[str]]) -> set[str]:
    return {member for cycle in cycles for member in cycle}


def add_item(state: QueueState, item: WorkItem) -> Transition:
    next_state = state.copy()
    if item.id in next_state.items:
        return Transition(next_state)
    new_item = copy.deepcopy(item)
    if new_item.sequence <= 0:
        new_item.sequence = next_state.next_sequence
    next_state.next_sequence = max(next_state.next_sequence, new_item.sequence) + 1
    next_state.items[new_item.id] = new_item
    return Transition(next_state, [Intent("created", new_item.id)])


def merge_item_definition(state: QueueState, incoming: WorkItem) -> Transition:
    """Refresh tracker-owned fields of an existing item, leaving runtime fields alone."""
    if incoming.id not in state.items:
        return add_item(state, incoming)
    next_state = state.copy()
    item = next_state.items[incoming.id]
    item.title = incoming.title
    item.description = incoming.description or item.description
    item.kind = incoming.kind
    item.assignee_capability = incoming.assignee_capability or item.assignee_capability
    item.dependencies = set(incoming.dependencies)
    item.predicted_resources = set(incoming.predicted_resources) or item.predicted_resources
    item.priority = incoming.priority
    if incoming.test_command:
        item.test_command = incoming.test_command
    return Transition(next_state)


def dispatch(
    state: QueueState,
    item_id: str,
    slot_index: int,
    *,
    run_id: str | None = None,
    cycles: list[list[str]] | None = None,
    now: str | None = None,
) -> Transition:
    item = state.item(item_id)
    _check_edge(item, Status.IN_PROGRESS)
    if item_id in state.locks:
        raise LockContention(item_id, state.locks[item_id].slot_index)
    if not dependencies_completed(state, item):
        raise InvalidTransition(
            item_id, item.status.value, Status.IN_PROGRESS.value, "dependencies not completed"
        )
    detected = find_cycles(state) if cycles is None else cycles
    if item_id in cycle_members(detected):
        raise InvalidTransition(
            item_id, item.status.value, Status.IN_PROGRESS.value, "item is on a dependency cycle"
        )
    if item.conflict_attempt >= MAX_CONFLICT_ATTEMPT:
        raise InvalidTransition(
            item_id, item.status.value, Status.IN_PROGRESS.value, "conflict tier exhausted"
        )

    for lock in state.locks.values():
        if lock.slot_index == slot_index:
            raise InvalidTransition(
                item_id, item.status.value, Status.IN_PROGRESS.value, f"slot {slot_index} is busy"
            )

    timestamp = now or utcnow_iso()
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.IN_PROGRESS
    target.attempt += 1
    target.started_at = timestamp
    target.not_before = None
    fresh = bool(target.context.pop("fresh_start", False))
    next_state.locks[item_id] = Lock(
        item_id=item_id, slot_index=slot_index, run_id=run_id, acquired_at=timestamp
    )
    return Transition(
        next_state,
        [
            Intent(
                "spawn",
                item_id,
                {"slot_index": slot_index, "attempt": target.attempt, "fresh": fresh},
            ),
            Intent("tracker_status", item_id, {"status": Status.IN_PROGRESS.value}),
        ],
    )


def _release(state: QueueState, item_id: str) -> None:
    state.locks.pop(item_id, None)


def _release_waiters(state: QueueState, blocker_id: str) -> list[Intent]:
    intents: list[Intent] = []
    for other in state.items.values():
        if other.status is Status.BLOCKED and other.blocked_by == blocker_id:
            other.status = Status.READY
            other.blocked_by = None
            other.block_reason = None
            intents.append(Intent("unblocked", other.id, {"blocker": blocker_id}))
            intents.append(Intent("tracker_status", other.id, {"status": Status.READY.value}))
    return intents


def complete(
    state: QueueState,
    item_id: str,
    *,
    commit_ref: str | None = None,
    now: str | None = None,
) -> Transition:
    item = state.item(item_id)
    _check_edge(item, Status.COMPLETED)
    timestamp = now or utcnow_iso()
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.COMPLETED
    target.completed_at = timestamp
    target.commit_ref = commit_ref
    target.last_failure = None
    target.blocked_by = None
    target.block_reason = None
    _release(next_state, item_id)
    intents = [Intent("tracker_close", item_id, {"commit_ref": commit_ref})]
    intents.extend(_release_waiters(next_state, item_id))
    return Transition(next_state, intents)


def requeue(
    state: QueueState,
    item_id: str,
    *,
    reason: str,
    context_updates: dict[str, Any] | None = None,
    clear_context: tuple[str, ...] = (),
    delay_seconds: float = 0.0,
    conflict_attempt: int | None = None,
) -> Transition:
    item = state.item(item_id)
    _check_edge(item, Status.READY, reason)
    if item.conflict_attempt >= MAX_CONFLICT_ATTEMPT:
        raise InvalidTransition(item_id, item.status.value, Status.READY.value, "conflict tier 3")
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.READY
    target.last_failure = reason
    target.blocked_by = None
    target.block_reason = None
    for key in clear_context:
        target.context.pop(key, None)
    if context_updates:
        target.context.update(context_updates)
    if conflict_attempt is not None:
        target.conflict_attempt = max(target.conflict_attempt, conflict_attempt)
    if delay_seconds > 0:
        target.not_before = (
            datetime.now(UTC).replace(microsecond=0) + timedelta(seconds=delay_seconds)
        ).isoformat()
    else:
        target.not_before = None
    _release(next_state, item_id)
    return Transition(
        next_state,
        [Intent("tracker_status", item_id, {"status": Status.READY.value, "reason": reason})],
    )


def block(
    state: QueueState,
    item_id: str,
    *,
    blocked_by: str | None,
    reason: str,
    context_updates: dict[str, Any] | None = None,
    conflict_attempt: int | None = None,
) -> Transition:
    item = state.item(item_id)
    _check_edge(item, Status.BLOCKED, reason)
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.BLOCKED
    target.blocked_by = blocked_by
    target.block_reason = reason
    if context_updates:
        target.context.update(context_updates)
    if conflict_attempt is not None:
        target.conflict_attempt = max(target.conflict_attempt, conflict_attempt)
    _release(next_state, item_id)
    intents = [Intent("tracker_status", item_id, {"status": Status.BLOCKED.value})]
    if blocked_by is not None:
        blocker = next_state.items.get(blocked_by)
        if blocker is None or blocker.status is Status.COMPLETED:
            # The blocker already finished, nothing to wait on.
            target.status = Status.READY
            target.blocked_by = None
            target.block_reason = None
            intents = [Intent("tracker_status", item_id, {"status": Status.READY.value})]
    return Transition(next_state, intents)


def unblock(state: QueueState, item_id: str, *, reason: str = "") -> Transition:
    item = state.item(item_id)
    if item.status is not Status.BLOCKED:
        raise InvalidTransition(item_id, item.status.value, Status.READY.value, "not blocked")
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.READY
    target.blocked_by = None
    target.block_reason = None
    return Transition(
        next_state,
        [Intent("tracker_status", item_id, {"status": Status.READY.value, "reason": reason})],
    )


def fail(
    state: QueueState,
    item_id: str,
    *,
    reason: str,
    source: str,
    diff: str = "",
    conflict_attempt: int | None = None,
) -> Transition:
    item = state.item(item_id)
    _check_edge(item, Status.FAILED, reason)
    next_state = state.copy()
    target = next_state.items[item_id]
    target.status = Status.FAILED
    target.last_failure = reason
    target.completed_at = utcnow_iso()
    if conflict_attempt is not None:
        target.conflict_attempt = max(target.conflict_attempt, min(conflict_attempt, 3))
    target.blocked_by = None
    target.block_reason = None
    _release(next_state, item_id)
    intents = [
        Intent("escalate", item_id, {"reason": reason, "source": source, "diff": diff}),
        Intent("tracker_status", item_id, {"status": Status.FAILED.value, "reason": reason}),
    ]
    # Items serialized behind a failed item have nothing left to wait on.
    intents.extend(_release_waiters(next_state, item_id))
    return Transition(next_state, intents)


def release_stranded(state: QueueState) -> Transition:
    """Return blocked items to ready when their blocker can no longer release them.

    Cycle blocks are left to :func:`apply_cycle_blocks`.
    """
    next_state = state.copy()
    intents: list[Intent] = []
    for item in sorted(next_state.items.values(), key=_seq):
        if item.status is not Status.BLOCKED or item.block_reason == "cycle":
            continue
        blocker = next_state.items.get(item.blocked_by) if item.blocked_by else None
        if blocker is not None and blocker.status in (Status.READY, Status.IN_PROGRESS):
            continue
        previous = item.blocked_by
        item.status = Status.READY
        item.blocked_by = None
        item.block_reason = None
        intents.append(Intent("unblocked", item.id, {"blocker": previous, "stranded": True}))
        intents.append(Intent("tracker_status", item.id, {"status": Status.READY.value}))
    return Transition(next_state, intents)


def annotate(state: QueueState, item_id: str, **fields: Any) -> Transition:
    """Update bookkeeping fields that do not change the queue partition."""
    next_state = state.copy()
    target = next_state.item(item_id)
    for key, value in fields.items():
        if key == "regression_flag":
            target.regression_flags.append(value)
            target.regression_flags = target.regression_flags[-20:]
        elif key == "context":
            target.context.update(value)
        else:
            raise InvalidTransition(item_id, target.status.value, target.status.value, key)
    return Transition(next_state)


def apply_cycle_blocks(state: QueueState, cycles: list[list[str]]) -> Transition:
    """Block ready items on a cycle and release cycle blocks the graph no longer reports."""
    members = cycle_members(cycles)
    next_state = state.copy()
    intents: list[Intent] = []
    for item in next_state.items.values():
        if item.status is Status.READY and item.id in members:
            item.status = Status.BLOCKED
            item.blocked_by = None
            item.block_reason = "cycle"
            intents.append(Intent("cycle_blocked", item.id))
            intents.append(Intent("tracker_status", item.id, {"status": Status.BLOCKED.value}))
        elif (
            item.status is Status.BLOCKED
            and item.block_reason == "cycle"
            and item.id not in members
        ):
            item.status = Status.READY
            item.block_reason = None
            intents.append(Intent("tracker_status", item.id, {"status": Status.READY.value}))
    return Transition(next_state, intents)


def backoff_elapsed(item: WorkItem, now: datetime | None = None) -> bool:
    not_before = parse_iso(item.not_before)
    if not_before is None:
        return True
    return (now or datetime.now(UTC)) >= not_before


def dispatchable(state: QueueState, cycles: list[list[str]] | None = None) -> list[WorkItem]:
    """Ready items whose dependencies are closed, off any cycle, and past backoff."""
    members = cycle_members(find_cycles(state) if cycles is None else cycles)
    now = datetime.now(UTC)
    return [
        item
        for item in state.partition(Status.READY)
        if item.id not in state.locks
        and item.id not in members
        and item.conflict_attempt < MAX_CONFLICT_ATTEMPT
        and dependencies_completed(state, item)
        and backoff_elapsed(item, now)
    ]


def check_invariants(state: QueueState) -> list[str]:
    """Return human-readable violations of the queue invariants (empty when healthy)."""
    problems: list[str] = []
    for item in state.items.values():
        has_lock = item.id in state.locks
        if item.status is Status.IN_PROGRESS and not has_lock:
            problems.append(f"{item.id} is in_progress without a lock")
        if item.status is not Status.IN_PROGRESS and has_lock:
            problems.append(f"{item.id} holds a lock while {item.status.value}")
        if item.status is Status.IN_PROGRESS and not dependencies_completed(state, item):
            problems.append(f"{item.id} is in_progress before its dependencies completed")
        if not 0 <= item.conflict_attempt <= MAX_CONFLICT_ATTEMPT:
            problems.append(f"{item.id} has conflict_attempt {item.conflict_attempt}")
        if item.conflict_attempt >= MAX_CONFLICT_ATTEMPT and item.status is Status.READY:
            problems.append(f"{item.id} re-entered ready after conflict escalation")
    slots = [lock.slot_index for lock in state.locks.values()]
    if len(slots) != len(set(slots)):
        problems.append("a slot is bound to more than one lock")
    for item_id in state.locks:
        if item_id not in state.items:
            problems.append(f"lock held for unknown item {item_id}")
    return problems


def waiting_on_backoff(state: QueueState, cycles: list[list[str]] | None = None) -> list[WorkItem]:
    """Ready items that only need their retry backoff window to pass."""
    members = cycle_members(find_cycles(state) if cycles is None else cycles)
    now = datetime.now(UTC)
    return [
        item
        for item in state.partition(Status.READY)
        if item.id not in members
        and item.conflict_attempt < MAX_CONFLICT_ATTEMPT
        and dependencies_completed(state, item)
        and not backoff_elapsed(item, now)
    ]
