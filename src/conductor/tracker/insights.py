from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GraphInsightsReport:
    bottlenecks: list[str] = field(default_factory=list)
    keystones: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)


def _ids(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    ids: list[str] = []
    for entry in raw:
        if isinstance(entry, dict):
            entry = entry.get("id") or entry.get("issue_id")
        if entry:
            ids.append(str(entry))
    return ids


class GraphInsights:
    """Optional read-only graph analytics (``bv --robot-*``).

    Every query returns an empty result when the service is missing, disabled
    or misbehaving, so callers never need to distinguish absence from "nothing
    to report".
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "bv",
        enabled: bool = True,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        self._warned = False

    def available(self) -> bool:
        return self.enabled and shutil.which(self.binary) is not None

    def _query(self, flag: str) -> Any:
        if not self.available():
            return None
        try:
            proc = subprocess.run(
                [self.binary, flag],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            self._warn(flag, str(exc))
            return None
        if proc.returncode != 0:
            self._warn(flag, proc.stderr.strip())
            return None
        try:
            return json.loads(proc.stdout)
        except json.JSONDecodeError:
            self._warn(flag, "output was not JSON")
            return None

    def _warn(self, flag: str, reason: str) -> None:
        if not self._warned:
            logger.warning("Graph insights `%s %s` unavailable: %s", self.binary, flag, reason)
        self._warned = True

    def execution_plan(self) -> list[list[str]]:
        """Parallel execution tracks, each an ordered list of item ids."""
        payload = self._query("--robot-plan")
        if isinstance(payload, dict):
            payload = payload.get("plan", payload)
        raw_tracks = payload.get("tracks", []) if isinstance(payload, dict) else []
        tracks: list[list[str]] = []
        for track in raw_tracks if isinstance(raw_tracks, list) else []:
            items = track.get("items", []) if isinstance(track, dict) else track
            ids = _ids(items)
            if ids:
                tracks.append(ids)
        return tracks

    def unblock_counts(self) -> dict[str, int]:
        """How many items each item unblocks, as reported by the execution plan."""
        payload = self._query("--robot-plan")
        if isinstance(payload, dict):
            payload = payload.get("plan", payload)
        counts: dict[str, int] = {}
        raw_tracks = payload.get("tracks", []) if isinstance(payload, dict) else []
        for track in raw_tracks if isinstance(raw_tracks, list) else []:
            items = track.get("items", []) if isinstance(track, dict) else []
            for entry in items if isinstance(items, list) else []:
                if not isinstance(entry, dict) or not entry.get("id"):
                    continue
                unblocks = entry.get("unblocks", [])
                counts[str(entry["id"])] = len(unblocks) if isinstance(unblocks, list) else 0
        return counts

    def insights(self) -> GraphInsightsReport:
        payload = self._query("--robot-insights")
        if not isinstance(payload, dict):
            return GraphInsightsReport()
        cycles: list[list[str]] = []
        for cycle in payload.get("cycles", []) or []:
            if isinstance(cycle, dict):
                cycle = cycle.get("path", [])
            ids = _ids(cycle)
            if ids:
                cycles.append(ids)
        return GraphInsightsReport(
            bottlenecks=_ids(payload.get("bottlenecks", [])),
            keystones=_ids(payload.get("keystones", [])),
            cycles=cycles,
        )

    def priority_recommendations(self) -> list[dict[str, Any]]:
        payload = self._query("--robot-priority")
        if isinstance(payload, dict):
            payload = payload.get("recommendations", [])
        if not isinstance(payload, list):
            return []
        return [entry for entry in payload if isinstance(entry, dict)]
