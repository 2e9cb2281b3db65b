from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any

from conductor import queue
from conductor.models import Capability, Status, WorkItem
from conductor.state.records import WorkRecordStore
from conductor.tracker.base import DependencyGraph, DependencyTree


def load_graph_file(path: Path) -> list[WorkItem]:
    """Read a JSON work graph: a list of items, or ``{"items": [...]}``."""
    payload: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("items", [])
    if not isinstance(payload, list):
        raise ValueError(f"{path} does not contain a list of work items.")
    items: list[WorkItem] = []
    for index, raw in enumerate(payload, start=1):
        if not isinstance(raw, dict) or "id" not in raw:
            raise ValueError(f"{path}: entry {index} is missing an id.")
        raw = dict(raw)
        raw.setdefault("dependencies", raw.pop("deps", []))
        raw.setdefault("predicted_resources", raw.pop("resources", []))
        raw["status"] = Status.COMPLETED.value if raw.get("status") == "completed" else "ready"
        for runtime_field in ("attempt", "conflict_attempt", "sequence"):
            raw.pop(runtime_field, None)
        items.append(WorkItem.from_dict(raw))
    return items


class LocalTracker(DependencyGraph):
    """Dependency graph kept in the work record store itself.

    Used when no external tracker is configured; status updates are already
    reflected in the record store, so they are accepted as no-ops.
    """

    def __init__(self, records: WorkRecordStore, *, id_prefix: str = "local") -> None:
        self.records = records
        self.id_prefix = id_prefix

    def list_all(self) -> list[WorkItem]:
        return self.records.items()

    def list_ready(self) -> list[WorkItem]:
        snapshot = self.records.snapshot()
        return [
            item
            for item in snapshot.partition(Status.READY)
            if queue.dependencies_completed(snapshot, item)
        ]

    def dependency_tree(self, item_id: str) -> DependencyTree:
        snapshot = self.records.snapshot()
        tree = DependencyTree(root=item_id)
        pending: deque[str] = deque([item_id])
        while pending:
            current = pending.popleft()
            node = snapshot.items.get(current)
            if node is None or current in tree.nodes:
                continue
            tree.nodes[current] = node
            for dep in sorted(node.dependencies):
                tree.edges.append((current, dep))
                pending.append(dep)
        return tree

    def cycle_check(self) -> list[list[str]]:
        return queue.find_cycles(self.records.snapshot())

    def update_status(self, item_id: str, status: Status) -> bool:
        return item_id in self.records.snapshot().items

    def close(self, item_id: str, reason: str) -> bool:
        return self.update_status(item_id, Status.COMPLETED)

    def create(
        self, title: str, kind: Capability, deps: list[str], *, description: str = ""
    ) -> WorkItem | None:
        snapshot = self.records.snapshot()
        item = WorkItem(
            id=f"{self.id_prefix}-{snapshot.next_sequence}",
            title=title,
            kind=kind,
            description=description,
            dependencies=set(deps),
        )
        self.records.add_items([item])
        return self.records.get(item.id)
