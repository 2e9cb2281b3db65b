from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from conductor.errors import InvalidTransition
from conductor.models import Checkpoint, RetryPolicy, Status
from conductor.state.checkpoints import CheckpointLedger
from conductor.state.records import WorkRecordStore

logger = logging.getLogger(__name__)

CLEAN_REQUEUE = "clean_requeue"
RESUME = "resume"
SKIPPED = "skipped"


def resume_instruction(checkpoint: Checkpoint) -> str:
    done = checkpoint.current_step
    lines = [f"Resume from step {done + 1}. Steps 1..{done} are already done; do not redo them:"]
    lines.extend(f"  {index}. {step}" for index, step in enumerate(checkpoint.steps_completed, 1))
    lines.append("These commits already exist on your branch; build on them, do not replace them:")
    lines.extend(f"  - {ref}" for ref in checkpoint.commits)
    return "\n".join(lines)


def recovery_context(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "resume_from_step": checkpoint.current_step + 1,
        "steps_completed": list(checkpoint.steps_completed),
        "commits": list(checkpoint.commits),
        "instruction": resume_instruction(checkpoint),
    }


@dataclass(slots=True)
class RecoveryOutcome:
    item_id: str
    action: str
    reason: str = ""
    steps: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)


class CheckpointRecovery:
    """Requeue items whose worker died, keeping any durable progress.

    Crashes, orphans left by a dead process and interrupts all go through
    :meth:`recover`.
    """

    def __init__(
        self,
        records: WorkRecordStore,
        checkpoints: CheckpointLedger,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.records = records
        self.checkpoints = checkpoints
        self.retry_policy = retry_policy or RetryPolicy()

    def recover(self, item_id: str, reason: str, *, backoff: bool = True) -> RecoveryOutcome:
        item = self.records.get(item_id)
        if item is None or item.status is not Status.IN_PROGRESS:
            return RecoveryOutcome(item_id, SKIPPED, reason="item is not in progress")
        delay = self.retry_policy.delay(item.attempt) if backoff else 0.0
        checkpoint = self.checkpoints.get(item_id)
        try:
            if checkpoint is None or not checkpoint.commits:
                self.records.requeue(
                    item_id,
                    reason=reason,
                    context_updates={"fresh_start": True},
                    clear_context=("recovery",),
                    delay_seconds=delay,
                )
                self.checkpoints.delete(item_id)
                logger.info("Recovered %s with a clean requeue (%s)", item_id, reason)
                return RecoveryOutcome(item_id, CLEAN_REQUEUE, reason=reason)
            self.records.requeue(
                item_id,
                reason=reason,
                context_updates={"recovery": recovery_context(checkpoint)},
                delay_seconds=delay,
            )
        except InvalidTransition as exc:
            logger.warning("Recovery of %s skipped: %s", item_id, exc)
            return RecoveryOutcome(item_id, SKIPPED, reason=str(exc))
        self.checkpoints.mark(item_id, "interrupted")
        logger.info(
            "Recovered %s to resume from step %d with %d commit(s)",
            item_id,
            checkpoint.current_step + 1,
            len(checkpoint.commits),
        )
        return RecoveryOutcome(
            item_id,
            RESUME,
            reason=reason,
            steps=list(checkpoint.steps_completed),
            commits=list(checkpoint.commits),
        )

    def recover_all(
        self, item_ids: Iterable[str], reason: str, *, backoff: bool = False
    ) -> list[RecoveryOutcome]:
        return [self.recover(item_id, reason, backoff=backoff) for item_id in item_ids]

    def reconcile_orphans(
        self,
        live_item_ids: set[str] | None = None,
        *,
        reason: str = "orphaned by a previous run",
    ) -> list[RecoveryOutcome]:
        """Recover ``in_progress`` items that no live slot is working on."""
        live = live_item_ids or set()
        orphans = [
            item.id for item in self.records.items(Status.IN_PROGRESS) if item.id not in live
        ]
        if orphans:
            logger.warning("Recovering %d orphaned item(s): %s", len(orphans), ", ".join(orphans))
        return self.recover_all(orphans, reason)
