from __future__ import annotations

from typing import Any

from conductor.models import Checkpoint
from conductor.state.git_notes import GitNotesStore


class CheckpointLedger:
    """Append-only progress ledger per work item, persisted in the ``checkpoints`` namespace."""

    NAMESPACE = "checkpoints"

    def __init__(self, state: GitNotesStore) -> None:
        self.state = state

    def _all(self) -> dict[str, Any]:
        payload = self.state.get_json(self.NAMESPACE, default={})
        return payload if isinstance(payload, dict) else {}

    def get(self, item_id: str) -> Checkpoint | None:
        raw = self._all().get(item_id)
        if not isinstance(raw, dict):
            return None
        return Checkpoint.from_dict(raw)

    def entries(self) -> list[Checkpoint]:
        return [
            Checkpoint.from_dict(raw)
            for raw in self._all().values()
            if isinstance(raw, dict) and "item_id" in raw
        ]

    def _mutate(self, item_id: str, mutation) -> Checkpoint:
        result: dict[str, Checkpoint] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            ledger = payload if isinstance(payload, dict) else {}
            raw = ledger.get(item_id)
            checkpoint = (
                Checkpoint.from_dict(raw) if isinstance(raw, dict) else Checkpoint(item_id=item_id)
            )
            mutation(checkpoint)
            ledger[item_id] = checkpoint.to_dict()
            result["checkpoint"] = checkpoint
            return ledger

        self.state.update_json(self.NAMESPACE, _updater, default={})
        return result["checkpoint"]

    def begin(self, item_id: str) -> Checkpoint:
        def _begin(checkpoint: Checkpoint) -> None:
            checkpoint.status = "running"

        return self._mutate(item_id, _begin)

    def record_step(self, item_id: str, step: str) -> Checkpoint:
        return self._mutate(item_id, lambda checkpoint: checkpoint.record_step(step))

    def record_commit(self, item_id: str, ref: str) -> Checkpoint:
        return self._mutate(item_id, lambda checkpoint: checkpoint.record_commit(ref))

    def mark(self, item_id: str, status: str) -> Checkpoint:
        def _mark(checkpoint: Checkpoint) -> None:
            checkpoint.status = status

        return self._mutate(item_id, _mark)

    def delete(self, item_id: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            ledger = payload if isinstance(payload, dict) else {}
            ledger.pop(item_id, None)
            return ledger

        self.state.update_json(self.NAMESPACE, _updater, default={})
