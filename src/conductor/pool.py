from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from conductor.errors import ConductorError
from conductor.workers import TaskHandle


@dataclass(slots=True)
class AgentSlot:
    slot_index: int
    bound_item_id: str | None = None
    task_handle: TaskHandle | None = None
    started_at: float | None = None
    last_heartbeat: float | None = None

    @property
    def busy(self) -> bool:
        return self.bound_item_id is not None

    def clear(self) -> None:
        self.bound_item_id = None
        self.task_handle = None
        self.started_at = None
        self.last_heartbeat = None


class AgentPool:
    """Fixed set of worker slots; a slot is bound to at most one item at a time."""

    def __init__(self, size: int = 5) -> None:
        if size < 1:
            raise ValueError("Agent pool size must be at least 1.")
        self.size = size
        self.slots = [AgentSlot(slot_index=index) for index in range(size)]

    def available(self) -> list[AgentSlot]:
        return [slot for slot in self.slots if not slot.busy]

    def busy(self) -> list[AgentSlot]:
        return [slot for slot in self.slots if slot.busy]

    def first_available(self) -> AgentSlot | None:
        free = self.available()
        return free[0] if free else None

    def slot_for(self, item_id: str) -> AgentSlot | None:
        for slot in self.slots:
            if slot.bound_item_id == item_id:
                return slot
        return None

    def bind(self, slot_index: int, item_id: str) -> AgentSlot:
        slot = self.slots[slot_index]
        if slot.busy:
            raise ConductorError(f"Slot {slot_index} is already bound to {slot.bound_item_id}")
        if self.slot_for(item_id) is not None:
            raise ConductorError(f"{item_id} is already bound to a slot")
        now = time.monotonic()
        slot.bound_item_id = item_id
        slot.started_at = now
        slot.last_heartbeat = now
        return slot

    def attach(self, slot_index: int, handle: TaskHandle) -> None:
        slot = self.slots[slot_index]
        if slot.bound_item_id != handle.item_id:
            raise ConductorError(f"Slot {slot_index} is not bound to {handle.item_id}")
        slot.task_handle = handle

    def release(self, slot_index: int) -> TaskHandle | None:
        slot = self.slots[slot_index]
        handle = slot.task_handle
        slot.clear()
        return handle

    def refresh_heartbeats(self) -> None:
        for slot in self.busy():
            if slot.task_handle is not None:
                slot.last_heartbeat = slot.task_handle.last_heartbeat

    def poll_completed(self) -> list[AgentSlot]:
        return [
            slot
            for slot in self.busy()
            if slot.task_handle is not None and slot.task_handle.is_ready()
        ]

    def unresponsive(self, timeout_seconds: float, now: float | None = None) -> list[AgentSlot]:
        self.refresh_heartbeats()
        current = time.monotonic() if now is None else now
        return [
            slot
            for slot in self.busy()
            if slot.task_handle is not None
            and not slot.task_handle.is_ready()
            and slot.last_heartbeat is not None
            and current - slot.last_heartbeat > timeout_seconds
        ]

    async def cancel_all(self) -> list[str]:
        """Cancel every running worker and free all slots; returns the items that were bound."""
        handles = [slot.task_handle for slot in self.busy() if slot.task_handle is not None]
        item_ids = [slot.bound_item_id for slot in self.busy() if slot.bound_item_id]
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*(handle.wait_closed() for handle in handles))
        for slot in self.slots:
            slot.clear()
        return item_ids
