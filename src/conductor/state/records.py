from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from conductor import queue
from conductor.models import Status, WorkItem
from conductor.queue import Intent, QueueState, Transition
from conductor.state.git_notes import GitNotesStore

logger = logging.getLogger(__name__)

TransitionFn = Callable[..., Transition]


class WorkRecordStore:
    """Durable work items and locks behind a single atomic read-modify-write API."""

    NAMESPACE = "queue"

    def __init__(self, state: GitNotesStore) -> None:
        self.state = state

    def snapshot(self) -> QueueState:
        return QueueState.from_dict(self.state.get_json(self.NAMESPACE, default={}))

    def get(self, item_id: str) -> WorkItem | None:
        return self.snapshot().items.get(item_id)

    def items(self, status: Status | None = None) -> list[WorkItem]:
        snapshot = self.snapshot()
        if status is not None:
            return snapshot.partition(status)
        return sorted(snapshot.items.values(), key=lambda item: item.sequence)

    def apply(self, fn: TransitionFn, *args: Any, **kwargs: Any) -> Transition:
        """Run ``fn`` against the latest state and persist its result atomically.

        ``fn`` may be re-run when a concurrent writer wins the revision race;
        only the transition that was actually written is returned.
        """
        outcome: dict[str, Transition] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            transition = fn(QueueState.from_dict(payload), *args, **kwargs)
            outcome["transition"] = transition
            return transition.state.to_dict()

        self.state.update_json(self.NAMESPACE, _updater, default={})
        transition = outcome["transition"]
        for intent in transition.intents:
            logger.debug("queue intent %s for %s %s", intent.kind, intent.item_id, intent.payload)
        return transition

    def add_items(self, items: Iterable[WorkItem]) -> list[Intent]:
        incoming = list(items)

        def _add_all(state: QueueState) -> Transition:
            intents: list[Intent] = []
            for item in incoming:
                transition = queue.merge_item_definition(state, item)
                state = transition.state
                intents.extend(transition.intents)
            return Transition(state, intents)

        return self.apply(_add_all).intents

    def dispatch(self, item_id: str, slot_index: int, **kwargs: Any) -> Transition:
        return self.apply(queue.dispatch, item_id, slot_index, **kwargs)

    def complete(self, item_id: str, **kwargs: Any) -> Transition:
        return self.apply(queue.complete, item_id, **kwargs)

    def requeue(self, item_id: str, **kwargs: Any) -> Transition:
        return self.apply(queue.requeue, item_id, **kwargs)

    def block(self, item_id: str, **kwargs: Any) -> Transition:
        return self.apply(queue.block, item_id, **kwargs)

    def unblock(self, item_id: str, **kwargs: Any) -> Transition:
        return self.apply(queue.unblock, item_id, **kwargs)

    def fail(self, item_id: str, **kwargs: Any) -> Transition:
        return self.apply(queue.fail, item_id, **kwargs)

    def annotate(self, item_id: str, **fields: Any) -> Transition:
        return self.apply(queue.annotate, item_id, **fields)

    def apply_cycle_blocks(self, cycles: list[list[str]]) -> Transition:
        return self.apply(queue.apply_cycle_blocks, cycles)

    def release_stranded(self) -> Transition:
        return self.apply(queue.release_stranded)

    def counts(self) -> dict[str, int]:
        snapshot = self.snapshot()
        return {status.value: len(snapshot.partition(status)) for status in Status}
