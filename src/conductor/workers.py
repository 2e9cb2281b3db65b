from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from conductor.errors import ConductorError, WorkerCrash
from conductor.models import Capability, ImprovementRecord, WorkItem
from conductor.specialists import specialist_for
from conductor.state.checkpoints import CheckpointLedger
from conductor.vcs import VersionControl

logger = logging.getLogger(__name__)

PROGRESS_EVENTS = {"step", "commit", "discovered"}


@dataclass(slots=True)
class WorkerResult:
    item_id: str
    content: str = ""
    working_directory: Path | None = None
    steps: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    discovered: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class TaskHandle:
    """Non-blocking view of one running worker task."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        self.last_heartbeat = time.monotonic()
        self._task: asyncio.Task[WorkerResult] | None = None

    def attach(self, task: asyncio.Task[WorkerResult]) -> None:
        self._task = task

    def touch(self) -> None:
        self.last_heartbeat = time.monotonic()

    def is_ready(self) -> bool:
        return self._task is not None and self._task.done()

    def status(self) -> str:
        if self._task is None or not self._task.done():
            return "running"
        if self._task.cancelled():
            return "cancelled"
        return "crashed" if self._task.exception() is not None else "succeeded"

    def result(self) -> WorkerResult:
        """Return the worker result; any worker failure surfaces as :class:`WorkerCrash`."""
        if self._task is None or not self._task.done():
            raise ConductorError(f"Worker for {self.item_id} is still running")
        if self._task.cancelled():
            raise WorkerCrash(self.item_id, "worker task was cancelled")
        exc = self._task.exception()
        if isinstance(exc, WorkerCrash):
            raise exc
        if exc is not None:
            raise WorkerCrash(self.item_id, str(exc) or type(exc).__name__) from exc
        return self._task.result()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)


class WorkerCapability(ABC):
    """Something that can implement a work item out of band."""

    @abstractmethod
    def spawn(
        self,
        item: WorkItem,
        task_description: str,
        learnings: list[ImprovementRecord],
        recovery_context: dict[str, Any] | None,
        *,
        fresh: bool = False,
    ) -> TaskHandle:
        """Start work on ``item`` without awaiting it."""


def parse_progress_events(text: str) -> Iterator[dict[str, Any]]:
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{") or '"event"' not in line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict) and event.get("event") in PROGRESS_EVENTS:
            yield event


def discovered_work(event: dict[str, Any]) -> dict[str, Any]:
    """Normalize a ``discovered`` progress event into tracker create arguments."""
    deps = event.get("deps") or []
    if isinstance(deps, str):
        deps = [deps]
    return {
        "title": str(event.get("title", "")).strip(),
        "kind": Capability.parse(event.get("kind")),
        "deps": [str(dep) for dep in deps if str(dep).strip()],
        "description": str(event.get("description", "") or ""),
    }


class AgentWorker(WorkerCapability):
    """Runs the capability specialist for an item inside its own working tree.

    Progress events streamed by the agent and new commits on the item branch are
    appended to the checkpoint ledger as they appear.
    """

    def __init__(
        self,
        backend: AgentBackend,
        vcs: VersionControl,
        checkpoints: CheckpointLedger,
        *,
        model: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> None:
        self.backend = backend
        self.vcs = vcs
        self.checkpoints = checkpoints
        self.model = model
        self.allowed_tools = allowed_tools

    def spawn(
        self,
        item: WorkItem,
        task_description: str,
        learnings: list[ImprovementRecord],
        recovery_context: dict[str, Any] | None,
        *,
        fresh: bool = False,
    ) -> TaskHandle:
        handle = TaskHandle(item.id)
        handle.attach(
            asyncio.create_task(
                self._run(item, task_description, learnings, recovery_context, fresh, handle),
                name=f"conductor-worker-{item.id}",
            )
        )
        return handle

    def _sync_branch_commits(self, item: WorkItem) -> None:
        for ref in self.vcs.branch_commits(item):
            self.checkpoints.record_commit(item.id, ref)

    async def _run(
        self,
        item: WorkItem,
        task_description: str,
        learnings: list[ImprovementRecord],
        recovery_context: dict[str, Any] | None,
        fresh: bool,
        handle: TaskHandle,
    ) -> WorkerResult:
        workdir = await asyncio.to_thread(self.vcs.prepare, item, fresh=fresh)
        if fresh:
            self.checkpoints.delete(item.id)
        self.checkpoints.begin(item.id)
        specialist = specialist_for(item.capability)(self.backend, model=self.model)
        context: dict[str, Any] = {
            "item_id": item.id,
            "title": item.title,
            "kind": item.capability.value,
            "dependencies": sorted(item.dependencies),
            "predicted_resources": sorted(item.predicted_resources),
            "known_mistakes": [
                {"pattern": record.pattern, "fix": record.fix, "category": record.category}
                for record in learnings
            ],
            "_working_directory": str(workdir),
        }
        if recovery_context:
            context["recovery"] = recovery_context

        chunks: list[str] = []
        discovered: list[dict[str, Any]] = []
        try:
            async for chunk in specialist.stream(task_description, context, self.allowed_tools):
                handle.touch()
                chunks.append(chunk)
                for event in parse_progress_events(chunk):
                    if event["event"] == "step" and event.get("name"):
                        self.checkpoints.record_step(item.id, str(event["name"]))
                        await asyncio.to_thread(self._sync_branch_commits, item)
                    elif event["event"] == "commit" and event.get("ref"):
                        self.checkpoints.record_commit(item.id, str(event["ref"]))
                    elif event["event"] == "discovered" and str(event.get("title", "")).strip():
                        discovered.append(discovered_work(event))
        except BackendExecutionError as exc:
            await asyncio.to_thread(self._sync_branch_commits, item)
            raise WorkerCrash(
                item.id, str(exc), unresponsive=isinstance(exc, BackendTimeoutError)
            ) from exc

        await asyncio.to_thread(self._sync_branch_commits, item)
        checkpoint = self.checkpoints.get(item.id)
        logger.info("Worker for %s finished (%d chunks)", item.id, len(chunks))
        return WorkerResult(
            item_id=item.id,
            content="".join(chunks).strip(),
            working_directory=workdir,
            steps=list(checkpoint.steps_completed) if checkpoint else [],
            commits=list(checkpoint.commits) if checkpoint else [],
            discovered=discovered,
            metadata={"specialist": specialist.role},
        )
