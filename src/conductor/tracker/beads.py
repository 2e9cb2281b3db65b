from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from collections import deque
from pathlib import Path
from typing import Any

from conductor.models import Capability, Status, WorkItem
from conductor.tracker.base import DependencyGraph, DependencyTree

logger = logging.getLogger(__name__)

RESOURCE_LABEL_PREFIXES = ("file:", "files:", "touches:", "path:")
KIND_LABEL_PREFIXES = ("kind:", "layer:", "capability:")
FILES_LINE_PATTERN = re.compile(r"^\s*(?:files?|touches|resources)\s*:\s*(.*)$", re.IGNORECASE)
BULLET_PATTERN = re.compile(r"^\s*[-*]\s+`?([^`\s]+)`?\s*$")
TEST_LINE_PATTERN = re.compile(r"^\s*test(?:\s+command)?\s*:\s*`?(.+?)`?\s*$", re.IGNORECASE)

TRACKER_STATUS = {
    Status.READY: "open",
    Status.IN_PROGRESS: "in_progress",
    Status.BLOCKED: "blocked",
    Status.FAILED: "blocked",
}


def _as_issue_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for key in ("issues", "items", "ready", "results"):
            value = payload.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
        if "id" in payload:
            return [payload]
    return []


def _dependency_ids(issue: dict[str, Any]) -> set[str]:
    deps: set[str] = set()
    for key in ("dependencies", "depends_on", "blocked_by"):
        raw = issue.get(key)
        if not isinstance(raw, list):
            continue
        for entry in raw:
            if isinstance(entry, str):
                deps.add(entry)
            elif isinstance(entry, dict):
                dep_type = str(entry.get("type") or entry.get("dependency_type") or "blocks")
                if dep_type not in {"blocks", "parent-child"}:
                    continue
                dep_id = entry.get("depends_on_id") or entry.get("id")
                if dep_id and dep_id != issue.get("id"):
                    deps.add(str(dep_id))
    return deps


def _resources_from_description(description: str) -> set[str]:
    resources: set[str] = set()
    collecting = False
    for line in description.splitlines():
        match = FILES_LINE_PATTERN.match(line)
        if match:
            inline = match.group(1).strip()
            if inline:
                resources.update(
                    part.strip().strip("`") for part in inline.split(",") if part.strip()
                )
                collecting = False
            else:
                collecting = True
            continue
        if collecting:
            bullet = BULLET_PATTERN.match(line)
            if bullet:
                resources.add(bullet.group(1))
                continue
            if line.strip():
                collecting = False
    return resources


def _test_command_from_description(description: str) -> str | None:
    for line in description.splitlines():
        match = TEST_LINE_PATTERN.match(line)
        if match:
            return match.group(1).strip()
    return None


def issue_to_item(issue: dict[str, Any]) -> WorkItem:
    labels = [str(label) for label in issue.get("labels", []) or []]
    description = str(issue.get("description") or "")
    kind = Capability.GENERAL
    resources: set[str] = set()
    for label in labels:
        lowered = label.lower()
        if lowered.startswith(KIND_LABEL_PREFIXES):
            kind = Capability.parse(lowered.split(":", 1)[1])
        elif lowered.startswith(RESOURCE_LABEL_PREFIXES):
            resources.add(label.split(":", 1)[1].strip())
        elif Capability.parse(lowered) is not Capability.GENERAL:
            kind = Capability.parse(lowered)
    if kind is Capability.GENERAL:
        kind = Capability.parse(str(issue.get("issue_type") or ""))
    resources.update(_resources_from_description(description))
    status = Status.COMPLETED if str(issue.get("status")) == "closed" else Status.READY
    try:
        priority = int(issue.get("priority", 2))
    except (TypeError, ValueError):
        priority = 2
    return WorkItem(
        id=str(issue["id"]),
        title=str(issue.get("title") or issue["id"]),
        kind=kind,
        assignee_capability=str(issue.get("assignee") or ""),
        description=description,
        dependencies=_dependency_ids(issue),
        predicted_resources=resources,
        priority=priority,
        status=status,
        test_command=_test_command_from_description(description),
    )


def parse_cycles(payload: Any) -> list[list[str]]:
    if isinstance(payload, dict):
        payload = payload.get("cycles", [])
    cycles: list[list[str]] = []
    if not isinstance(payload, list):
        return cycles
    for entry in payload:
        if isinstance(entry, dict):
            entry = entry.get("path") or entry.get("issues") or entry.get("ids") or []
        if not isinstance(entry, list):
            continue
        ids: list[str] = []
        for node in entry:
            node_id = node.get("id") if isinstance(node, dict) else node
            if node_id and str(node_id) not in ids:
                ids.append(str(node_id))
        if ids:
            cycles.append(ids)
    return cycles


class BeadsTracker(DependencyGraph):
    """Dependency graph backed by the ``bd`` issue tracker CLI."""

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "bd",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str] | None:
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
            self._degrade(args, str(exc))
            return None
        if proc.returncode != 0:
            self._degrade(args, proc.stderr.strip() or proc.stdout.strip())
            return None
        self._degraded = False
        return proc

    def _degrade(self, args: list[str], reason: str) -> None:
        if not self._degraded:
            logger.warning(
                "Tracker command `%s %s` failed: %s", self.binary, " ".join(args), reason
            )
        self._degraded = True

    def _run_json(self, args: list[str]) -> Any:
        proc = self._run([*args, "--json"])
        if proc is None:
            return None
        output = proc.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            self._degrade(args, "output was not JSON")
            return None

    def list_all(self) -> list[WorkItem]:
        payload = self._run_json(["list", "--all"])
        return [issue_to_item(issue) for issue in _as_issue_list(payload) if "id" in issue]

    def list_ready(self) -> list[WorkItem]:
        payload = self._run_json(["ready"])
        return [issue_to_item(issue) for issue in _as_issue_list(payload) if "id" in issue]

    def dependency_tree(self, item_id: str) -> DependencyTree:
        by_id = {item.id: item for item in self.list_all()}
        tree = DependencyTree(root=item_id)
        pending: deque[str] = deque([item_id])
        while pending:
            current = pending.popleft()
            node = by_id.get(current)
            if node is None or current in tree.nodes:
                continue
            tree.nodes[current] = node
            for dep in sorted(node.dependencies):
                tree.edges.append((current, dep))
                pending.append(dep)
        return tree

    def cycle_check(self) -> list[list[str]]:
        return parse_cycles(self._run_json(["dep", "cycles"]))

    def update_status(self, item_id: str, status: Status) -> bool:
        if status is Status.COMPLETED:
            return self.close(item_id, "completed by conductor")
        return self._run(["update", item_id, "--status", TRACKER_STATUS[status]]) is not None

    def close(self, item_id: str, reason: str) -> bool:
        return self._run(["close", item_id, "--reason", reason]) is not None

    def create(
        self, title: str, kind: Capability, deps: list[str], *, description: str = ""
    ) -> WorkItem | None:
        args = ["create", title, "-t", "task", "-l", f"kind:{kind.value}"]
        if description:
            args.extend(["-d", description])
        if deps:
            args.extend(["--deps", ",".join(deps)])
        issues = _as_issue_list(self._run_json(args))
        if not issues or "id" not in issues[0]:
            return None
        item = issue_to_item(issues[0])
        item.dependencies |= set(deps)
        return item
