from __future__ import annotations

import asyncio
import logging
import random
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.config import ProjectConfig, ValidationConfig
from conductor.errors import ValidationFailure
from conductor.models import Status, WorkItem, utcnow_iso
from conductor.state.git_notes import GitNotesStore
from conductor.state.records import WorkRecordStore
from conductor.vcs import ChangeSet, MergeOutcome, VersionControl

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

GATE_NAMES = {
    1: "unit",
    2: "integration",
    3: "merge",
    4: "regression",
    5: "quality",
}


def run_command(command: str, cwd: Path, timeout_seconds: float | None = None) -> dict[str, Any]:
    """Run a shell-ish command and capture its outcome as a JSON-friendly payload."""
    command_text = command.strip()
    if not command_text:
        return {
            "type": "command",
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return {
            "type": "command",
            "command": command,
            "exit_code": 124,
            "stdout_tail": "",
            "stderr_tail": f"Command timed out after {timeout_seconds}s.",
            "used_shell": used_shell,
        }
    except (FileNotFoundError, PermissionError) as exc:
        return {
            "type": "command",
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
            "used_shell": used_shell,
        }
    return {
        "type": "command",
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-2000:],
        "stderr_tail": proc.stderr.strip()[-2000:],
        "used_shell": used_shell,
    }


def command_output(result: dict[str, Any]) -> str:
    return "\n".join(
        part for part in (result.get("stdout_tail", ""), result.get("stderr_tail", "")) if part
    )


@dataclass(slots=True)
class GateResult:
    gate: int
    passed: bool
    hard: bool = True
    reason: str = ""
    output: str = ""
    artifacts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return GATE_NAMES[self.gate]


@dataclass(slots=True)
class ValidationResult:
    item_id: str
    gates: list[GateResult] = field(default_factory=list)
    conflict: MergeOutcome | None = None
    regression_item_id: str | None = None

    @property
    def failed_gate(self) -> GateResult | None:
        for gate in self.gates:
            if not gate.passed and gate.hard:
                return gate
        return None

    @property
    def passed(self) -> bool:
        return self.failed_gate is None

    @property
    def failure(self) -> ValidationFailure | None:
        gate = self.failed_gate
        if gate is None:
            return None
        return ValidationFailure(gate.gate, gate.name, gate.reason, output=gate.output)

    @property
    def advisories(self) -> list[GateResult]:
        return [gate for gate in self.gates if not gate.passed and not gate.hard]


class ValidationPipeline:
    """Five sequential gates; the first hard failure stops the pipeline."""

    def __init__(
        self,
        project: ProjectConfig,
        settings: ValidationConfig,
        vcs: VersionControl,
        records: WorkRecordStore,
        state: GitNotesStore,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.project = project
        self.settings = settings
        self.vcs = vcs
        self.records = records
        self.state = state
        self.rng = rng or random.Random()

    def test_command_for(self, item: WorkItem) -> str:
        template = item.test_command or self.project.test_command
        return template.replace("{item_id}", item.id)

    async def _run(self, command: str, cwd: Path) -> dict[str, Any]:
        return await asyncio.to_thread(
            run_command, command, cwd, self.project.command_timeout_seconds
        )

    async def validate(self, item: WorkItem, change_set: ChangeSet) -> ValidationResult:
        result = ValidationResult(item_id=item.id)
        steps = (
            self._unit_gate,
            self._integration_gate,
            self._merge_gate,
            self._regression_gate,
            self._quality_gate,
        )
        for step in steps:
            gate = await step(item, change_set, result)
            result.gates.append(gate)
            self._record_gate_result(item, gate)
            if not gate.passed and gate.hard:
                logger.info(
                    "%s failed gate %d (%s): %s", item.id, gate.gate, gate.name, gate.reason
                )
                break
        return result

    async def _unit_gate(
        self, item: WorkItem, change_set: ChangeSet, result: ValidationResult
    ) -> GateResult:
        command = self.test_command_for(item)
        if not command.strip():
            return GateResult(1, True, reason="No test command configured.")
        outcome = await self._run(command, change_set.working_directory)
        if outcome["exit_code"] != 0:
            return GateResult(
                1,
                False,
                reason=f"Test command exited with {outcome['exit_code']}.",
                output=command_output(outcome),
                artifacts=[outcome],
            )
        return GateResult(1, True, artifacts=[outcome])

    async def _integration_gate(
        self, item: WorkItem, change_set: ChangeSet, result: ValidationResult
    ) -> GateResult:
        snapshot = self.records.snapshot()
        open_deps = sorted(
            dep
            for dep in item.dependencies
            if (dep_item := snapshot.items.get(dep)) is None
            or dep_item.status is not Status.COMPLETED
        )
        artifacts: list[dict[str, Any]] = [{"type": "dependency_closure", "open": open_deps}]
        if open_deps:
            logger.warning("%s validated with open dependencies: %s", item.id, ", ".join(open_deps))
        command = self.project.integration_command.replace("{item_id}", item.id)
        if command.strip():
            outcome = await self._run(command, change_set.working_directory)
            artifacts.append(outcome)
            if outcome["exit_code"] != 0:
                return GateResult(
                    2,
                    False,
                    reason=f"Integration command exited with {outcome['exit_code']}.",
                    output=command_output(outcome),
                    artifacts=artifacts,
                )
        reason = f"Open dependencies: {', '.join(open_deps)}" if open_deps else ""
        return GateResult(2, True, reason=reason, artifacts=artifacts)

    async def _merge_gate(
        self, item: WorkItem, change_set: ChangeSet, result: ValidationResult
    ) -> GateResult:
        outcome = await asyncio.to_thread(self.vcs.trial_merge, change_set)
        if outcome.ok:
            return GateResult(3, True)
        result.conflict = outcome
        return GateResult(
            3,
            False,
            reason=f"Trial merge conflicts in {', '.join(outcome.paths) or 'unknown paths'}.",
            output=outcome.diff,
            artifacts=[{"type": "merge_conflict", "paths": list(outcome.paths)}],
        )

    async def _regression_gate(
        self, item: WorkItem, change_set: ChangeSet, result: ValidationResult
    ) -> GateResult:
        if not self.settings.regression_sample:
            return GateResult(4, True, reason="Regression sampling disabled.")
        candidates = [
            other
            for other in self.records.items(Status.COMPLETED)
            if other.id != item.id and self.test_command_for(other).strip()
        ]
        if not candidates:
            return GateResult(4, True, reason="No completed items to sample.")
        sampled = self.rng.choice(candidates)
        result.regression_item_id = sampled.id
        outcome = await self._run(self.test_command_for(sampled), change_set.working_directory)
        if outcome["exit_code"] == 0:
            return GateResult(4, True, artifacts=[{"sampled": sampled.id}, outcome])
        self.records.annotate(
            sampled.id,
            regression_flag={
                "introduced_by": item.id,
                "exit_code": outcome["exit_code"],
                "flagged_at": utcnow_iso(),
            },
        )
        return GateResult(
            4,
            False,
            reason=f"Regression in previously completed {sampled.id}.",
            output=command_output(outcome),
            artifacts=[{"sampled": sampled.id}, outcome],
        )

    async def _quality_gate(
        self, item: WorkItem, change_set: ChangeSet, result: ValidationResult
    ) -> GateResult:
        if not self.settings.quality_checks:
            return GateResult(5, True, hard=False, reason="Quality checks disabled.")
        artifacts: list[dict[str, Any]] = []
        failures: list[str] = []
        outputs: list[str] = []
        for label, command in (
            ("lint", self.project.lint_command),
            ("type-check", self.project.type_check_command),
        ):
            if not command.strip():
                continue
            outcome = await self._run(command, change_set.working_directory)
            artifacts.append(outcome)
            if outcome["exit_code"] != 0:
                failures.append(label)
                outputs.append(command_output(outcome))
        if failures:
            return GateResult(
                5,
                False,
                hard=False,
                reason=f"Advisory {' and '.join(failures)} findings.",
                output="\n".join(outputs),
                artifacts=artifacts,
            )
        return GateResult(5, True, hard=False, artifacts=artifacts)

    def _record_gate_result(self, item: WorkItem, gate: GateResult) -> None:
        entry = {
            "name": gate.name,
            "gate": gate.gate,
            "item_id": item.id,
            "passed": gate.passed,
            "hard": gate.hard,
            "reason": gate.reason,
            "checked_at": utcnow_iso(),
        }

        def _apply(metrics: dict[str, Any]) -> None:
            quality_gates = metrics.get("quality_gates", [])
            if not isinstance(quality_gates, list):
                quality_gates = []
            quality_gates.append(entry)
            metrics["quality_gates"] = quality_gates[-200:]
            if not gate.passed:
                failures = metrics.get("gate_failures", [])
                if not isinstance(failures, list):
                    failures = []
                failures.append(
                    {
                        "name": gate.name,
                        "item_id": item.id,
                        "reason": gate.reason or "gate failed",
                        "checked_at": entry["checked_at"],
                    }
                )
                metrics["gate_failures"] = failures[-50:]
                metrics["last_gate_failure"] = failures[-1]

        self.state.update_metrics(_apply)
