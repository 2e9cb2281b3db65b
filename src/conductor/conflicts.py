"""Tiered merge-conflict resolution.

``conflict_attempt`` walks 0 -> 1 (retry with the diff attached), 1 -> 2
(serialize behind the in-flight item touching the same files) and finally 3
(manual escalation). The counter never decreases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from conductor import queue
from conductor.models import MAX_CONFLICT_ATTEMPT, Status, WorkItem
from conductor.queue import QueueState, Transition
from conductor.state.checkpoints import CheckpointLedger
from conductor.state.records import WorkRecordStore
from conductor.vcs import MergeOutcome

logger = logging.getLogger(__name__)

RETRY = "retry"
SERIALIZE = "serialize"
ESCALATE = "escalate"


@dataclass(slots=True)
class ConflictDecision:
    action: str
    tier: int
    blocked_by: str | None = None
    paths: list[str] = field(default_factory=list)


def find_blocker(
    state: QueueState,
    item: WorkItem,
    paths: list[str],
    *,
    include_blocked: bool = False,
) -> WorkItem | None:
    """The active item whose resources explain a conflict on ``paths``, if any."""
    statuses = {Status.IN_PROGRESS, Status.BLOCKED} if include_blocked else {Status.IN_PROGRESS}
    active = [
        other
        for other in sorted(state.items.values(), key=lambda candidate: candidate.sequence)
        if other.id != item.id and other.status in statuses and other.blocked_by != item.id
    ]
    if paths:
        conflicted = set(paths)
        return next((other for other in active if other.predicted_resources & conflicted), None)
    # No paths reported: fall back to the item's own predicted resources.
    return next(
        (other for other in active if other.predicted_resources & item.predicted_resources), None
    )


def decide(
    state: QueueState,
    item: WorkItem,
    outcome: MergeOutcome,
    *,
    include_blocked: bool = False,
) -> ConflictDecision:
    if item.conflict_attempt == 0:
        return ConflictDecision(RETRY, 1, paths=list(outcome.paths))
    blocker = find_blocker(state, item, outcome.paths, include_blocked=include_blocked)
    if blocker is not None and item.conflict_attempt < MAX_CONFLICT_ATTEMPT:
        return ConflictDecision(SERIALIZE, 2, blocked_by=blocker.id, paths=list(outcome.paths))
    return ConflictDecision(ESCALATE, MAX_CONFLICT_ATTEMPT, paths=list(outcome.paths))


def resolve_conflict(
    state: QueueState,
    item_id: str,
    outcome: MergeOutcome,
    *,
    include_blocked: bool = False,
) -> Transition:
    """Settle an in-progress item whose trial merge conflicted."""
    item = state.item(item_id)
    decision = decide(state, item, outcome, include_blocked=include_blocked)
    notes = {"conflict_diff": outcome.diff, "conflict_paths": list(outcome.paths)}
    if decision.action == RETRY:
        return queue.requeue(
            state,
            item_id,
            reason="merge conflict",
            context_updates={**notes, "fresh_start": True},
            conflict_attempt=decision.tier,
        )
    if decision.action == SERIALIZE:
        return queue.block(
            state,
            item_id,
            blocked_by=decision.blocked_by,
            reason=f"serialized behind {decision.blocked_by}",
            context_updates={**notes, "fresh_start": True},
            conflict_attempt=decision.tier,
        )
    return queue.fail(
        state,
        item_id,
        reason="merge conflict persisted with no active item to serialize behind",
        source="conflict",
        diff=outcome.diff,
        conflict_attempt=decision.tier,
    )


class ConflictResolver:
    """Applies the conflict tiers to the record store.

    A retry or serialization starts the item over on a fresh working tree, so its
    checkpoint is dropped with it.
    """

    def __init__(
        self,
        records: WorkRecordStore,
        *,
        checkpoints: CheckpointLedger | None = None,
        include_blocked: bool = False,
    ) -> None:
        self.records = records
        self.checkpoints = checkpoints or CheckpointLedger(records.state)
        self.include_blocked = include_blocked

    def resolve(self, item_id: str, outcome: MergeOutcome) -> Transition:
        transition = self.records.apply(
            resolve_conflict, item_id, outcome, include_blocked=self.include_blocked
        )
        settled = transition.state.items[item_id]
        if settled.context.get("fresh_start"):
            self.checkpoints.delete(item_id)
        logger.info(
            "Conflict on %s settled as %s (tier %d)",
            item_id,
            settled.status.value,
            settled.conflict_attempt,
        )
        return transition
