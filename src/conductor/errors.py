from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration errors."""


class StateStoreError(ConductorError):
    """Raised when shared-state operations fail."""


class InvalidTransition(ConductorError):
    """Raised when a work item is moved along an edge the state machine forbids."""

    def __init__(self, item_id: str, current: str, target: str, reason: str = "") -> None:
        message = f"Invalid transition for {item_id}: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.item_id = item_id
        self.current = current
        self.target = target
        self.reason = reason


class ValidationFailure(ConductorError):
    """Raised when a validation gate rejects a worker result."""

    def __init__(self, gate: int, gate_name: str, message: str, *, output: str = "") -> None:
        super().__init__(f"Gate {gate} ({gate_name}) failed: {message}")
        self.gate = gate
        self.gate_name = gate_name
        self.output = output


class MergeConflict(ConductorError):
    """Raised when a trial merge of a change set conflicts with the baseline."""

    def __init__(self, diff: str, *, paths: list[str] | None = None) -> None:
        super().__init__("Trial merge reported conflicts.")
        self.diff = diff
        self.paths = list(paths or [])


class WorkerCrash(ConductorError):
    """Raised when a worker dies or stops responding mid-task."""

    def __init__(self, item_id: str, message: str, *, unresponsive: bool = False) -> None:
        super().__init__(f"Worker for {item_id} crashed: {message}")
        self.item_id = item_id
        self.unresponsive = unresponsive


class CycleDetected(ConductorError):
    """Raised when the dependency graph contains a cycle through an item."""

    def __init__(self, cycles: list[list[str]]) -> None:
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles[:5])
        super().__init__(f"Dependency cycle detected: {rendered}")
        self.cycles = cycles


class LockContention(ConductorError):
    """Raised when a lock for a work item is already held."""

    def __init__(self, item_id: str, holder_slot: int | None = None) -> None:
        super().__init__(f"Lock for {item_id} is already held by slot {holder_slot}.")
        self.item_id = item_id
        self.holder_slot = holder_slot


class EscalationRequired(ConductorError):
    """Raised when an item needs manual review before it can proceed."""

    def __init__(self, item_id: str, reason: str, *, escalation_id: str | None = None) -> None:
        super().__init__(f"Manual review required for {item_id}: {reason}")
        self.item_id = item_id
        self.reason = reason
        self.escalation_id = escalation_id


class TrackerUnavailable(ConductorError):
    """Raised internally when the issue tracker cannot be reached."""


class VersionControlError(ConductorError):
    """Raised when a version control command fails outside of merge conflicts."""
