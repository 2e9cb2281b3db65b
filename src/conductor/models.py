from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Status(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class Capability(str, Enum):
    DATA_LAYER = "data-layer"
    INTERFACE_LAYER = "interface-layer"
    PRESENTATION_LAYER = "presentation-layer"
    TEST = "test"
    INTEGRATION = "integration"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: str | None) -> Capability:
        if not value:
            return cls.GENERAL
        normalized = str(value).strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        return cls.GENERAL


MAX_CONFLICT_ATTEMPT = 3


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    kind: Capability = Capability.GENERAL
    assignee_capability: str = ""
    description: str = ""
    dependencies: set[str] = field(default_factory=set)
    predicted_resources: set[str] = field(default_factory=set)
    priority: int = 2
    sequence: int = 0
    attempt: int = 0
    status: Status = Status.READY
    conflict_attempt: int = 0
    last_failure: str | None = None
    blocked_by: str | None = None
    block_reason: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    not_before: str | None = None
    test_command: str | None = None
    commit_ref: str | None = None
    regression_flags: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def capability(self) -> Capability:
        if self.assignee_capability:
            return Capability.parse(self.assignee_capability)
        return self.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "assignee_capability": self.assignee_capability,
            "description": self.description,
            "dependencies": sorted(self.dependencies),
            "predicted_resources": sorted(self.predicted_resources),
            "priority": self.priority,
            "sequence": self.sequence,
            "attempt": self.attempt,
            "status": self.status.value,
            "conflict_attempt": self.conflict_attempt,
            "last_failure": self.last_failure,
            "blocked_by": self.blocked_by,
            "block_reason": self.block_reason,
            "context": dict(self.context),
            "not_before": self.not_before,
            "test_command": self.test_command,
            "commit_ref": self.commit_ref,
            "regression_flags": list(self.regression_flags),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkItem:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or payload["id"]),
            kind=Capability.parse(payload.get("kind")),
            assignee_capability=str(payload.get("assignee_capability") or ""),
            description=str(payload.get("description") or ""),
            dependencies={str(dep) for dep in payload.get("dependencies", []) or []},
            predicted_resources={
                str(path) for path in payload.get("predicted_resources", []) or []
            },
            priority=int(payload.get("priority", 2)),
            sequence=int(payload.get("sequence", 0)),
            attempt=int(payload.get("attempt", 0)),
            status=Status(payload.get("status", Status.READY.value)),
            conflict_attempt=int(payload.get("conflict_attempt", 0)),
            last_failure=payload.get("last_failure"),
            blocked_by=payload.get("blocked_by"),
            block_reason=payload.get("block_reason"),
            context=dict(payload.get("context") or {}),
            not_before=payload.get("not_before"),
            test_command=payload.get("test_command"),
            commit_ref=payload.get("commit_ref"),
            regression_flags=list(payload.get("regression_flags") or []),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class Lock:
    item_id: str
    slot_index: int
    run_id: str | None = None
    acquired_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "slot_index": self.slot_index,
            "run_id": self.run_id,
            "acquired_at": self.acquired_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Lock:
        return cls(
            item_id=str(payload["item_id"]),
            slot_index=int(payload["slot_index"]),
            run_id=payload.get("run_id"),
            acquired_at=str(payload.get("acquired_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Checkpoint:
    item_id: str
    steps_completed: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    current_step: int = 0
    status: str = "running"
    updated_at: str = field(default_factory=utcnow_iso)

    def record_step(self, step: str) -> bool:
        step = step.strip()
        if not step or step in self.steps_completed:
            return False
        self.steps_completed.append(step)
        self.current_step = len(self.steps_completed)
        self.updated_at = utcnow_iso()
        return True

    def record_commit(self, ref: str) -> bool:
        ref = ref.strip()
        if not ref or ref in self.commits:
            return False
        self.commits.append(ref)
        self.updated_at = utcnow_iso()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "steps_completed": list(self.steps_completed),
            "commits": list(self.commits),
            "current_step": self.current_step,
            "status": self.status,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        steps = [str(step) for step in payload.get("steps_completed", []) or []]
        return cls(
            item_id=str(payload["item_id"]),
            steps_completed=steps,
            commits=[str(ref) for ref in payload.get("commits", []) or []],
            current_step=int(payload.get("current_step", len(steps))),
            status=str(payload.get("status", "running")),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class ImprovementRecord:
    pattern: str
    fix: str
    category: str
    seen_count: int = 0
    first_seen: str = field(default_factory=utcnow_iso)
    last_seen: str = field(default_factory=utcnow_iso)
    trend: str = "stable"
    occurrences: list[str] = field(default_factory=list)
    item_kinds: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.category}:{self.pattern}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "fix": self.fix,
            "category": self.category,
            "seen_count": self.seen_count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "trend": self.trend,
            "occurrences": list(self.occurrences),
            "item_kinds": list(self.item_kinds),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ImprovementRecord:
        return cls(
            pattern=str(payload["pattern"]),
            fix=str(payload.get("fix", "")),
            category=str(payload.get("category", "general")),
            seen_count=int(payload.get("seen_count", 0)),
            first_seen=str(payload.get("first_seen") or utcnow_iso()),
            last_seen=str(payload.get("last_seen") or utcnow_iso()),
            trend=str(payload.get("trend", "stable")),
            occurrences=[str(item) for item in payload.get("occurrences", []) or []],
            item_kinds=[str(item) for item in payload.get("item_kinds", []) or []],
        )


@dataclass(slots=True)
class EscalationRecord:
    id: str
    item_id: str
    reason: str
    source: str
    diff: str = ""
    created_at: str = field(default_factory=utcnow_iso)
    resolved: bool = False
    resolved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "reason": self.reason,
            "source": self.source,
            "diff": self.diff,
            "created_at": self.created_at,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> EscalationRecord:
        return cls(
            id=str(payload["id"]),
            item_id=str(payload["item_id"]),
            reason=str(payload.get("reason", "")),
            source=str(payload.get("source", "")),
            diff=str(payload.get("diff", "")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            resolved=bool(payload.get("resolved", False)),
            resolved_at=payload.get("resolved_at"),
        )


BackoffFn = Callable[[int], float]


@dataclass(slots=True)
class RetryPolicy:
    """Attempt cap and backoff consulted by the scheduler before re-dispatch."""

    max_attempts: int = 3
    backoff_seconds: float = 30.0
    backoff_max_seconds: float = 600.0
    backoff_fn: BackoffFn | None = None

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def delay(self, attempt: int) -> float:
        """Seconds to wait before dispatching attempt ``attempt + 1``."""
        if attempt <= 0:
            return 0.0
        if self.backoff_fn is not None:
            return max(0.0, float(self.backoff_fn(attempt)))
        delay = self.backoff_seconds * (2 ** (attempt - 1))
        return max(0.0, min(delay, self.backoff_max_seconds))
