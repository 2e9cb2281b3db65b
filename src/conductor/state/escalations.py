from __future__ import annotations

from typing import Any
from uuid import uuid4

from conductor.models import EscalationRecord, utcnow_iso
from conductor.state.git_notes import GitNotesStore


class EscalationLog:
    """Durable manual-review records kept in the ``escalations`` namespace."""

    NAMESPACE = "escalations"

    def __init__(self, state: GitNotesStore) -> None:
        self.state = state

    def _records(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("records", [])
        if not isinstance(payload, list):
            return []
        return [entry for entry in payload if isinstance(entry, dict) and "id" in entry]

    def entries(self, *, include_resolved: bool = False) -> list[EscalationRecord]:
        records = [
            EscalationRecord.from_dict(raw)
            for raw in self._records(self.state.get_json(self.NAMESPACE, default={}))
        ]
        if include_resolved:
            return records
        return [record for record in records if not record.resolved]

    def open_for(self, item_id: str) -> EscalationRecord | None:
        for record in self.entries():
            if record.item_id == item_id:
                return record
        return None

    def add(self, item_id: str, reason: str, source: str, diff: str = "") -> EscalationRecord:
        record = EscalationRecord(
            id=f"esc-{uuid4().hex[:8]}",
            item_id=item_id,
            reason=reason,
            source=source,
            diff=diff,
        )

        def _append(payload: Any) -> dict[str, Any]:
            records = self._records(payload)
            records.append(record.to_dict())
            return {"records": records}

        self.state.update_json(self.NAMESPACE, _append, default={})
        return record

    def resolve(self, escalation_id: str) -> EscalationRecord | None:
        found: dict[str, EscalationRecord] = {}

        def _resolve(payload: Any) -> dict[str, Any]:
            records = self._records(payload)
            for raw in records:
                if raw.get("id") == escalation_id and not raw.get("resolved"):
                    raw["resolved"] = True
                    raw["resolved_at"] = utcnow_iso()
                    found["record"] = EscalationRecord.from_dict(raw)
            return {"records": records}

        self.state.update_json(self.NAMESPACE, _resolve, default={})
        return found.get("record")
