from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from conductor.errors import ConductorError, ValidationFailure
from conductor.models import Capability, ImprovementRecord, WorkItem, parse_iso, utcnow_iso
from conductor.state.git_notes import GitNotesStore

logger = logging.getLogger(__name__)

OCCURRENCE_LIMIT = 50
PATTERN_LIMIT = 200


@dataclass(frozen=True, slots=True)
class LearningRule:
    category: str
    matcher: re.Pattern[str]
    fix: str


RULES: tuple[LearningRule, ...] = (
    LearningRule(
        "conflicts",
        re.compile(r"^.*(?:CONFLICT|merge conflict|Trial merge conflicts).*$", re.I | re.M),
        "Reconcile with the current baseline instead of overwriting files other items touched.",
    ),
    LearningRule(
        "timeouts",
        re.compile(r"^.*(?:timed out|TimeoutError|deadline exceeded).*$", re.I | re.M),
        "Keep commands bounded; avoid long-running or interactive processes in tests.",
    ),
    LearningRule(
        "syntax",
        re.compile(r"^.*(?:SyntaxError|IndentationError|Unexpected token|ParseError).*$", re.M),
        "Re-read edited files for syntax before committing.",
    ),
    LearningRule(
        "imports",
        re.compile(
            r"^.*(?:ModuleNotFoundError|ImportError|cannot import name|Cannot find module"
            r"|No module named).*$",
            re.M,
        ),
        "Verify imported modules exist and are declared dependencies before using them.",
    ),
    LearningRule(
        "types",
        re.compile(r"^.*(?:TypeError|error TS\d+|Incompatible types|has no attribute).*$", re.M),
        "Check call signatures and attribute names against the actual definitions.",
    ),
    LearningRule(
        "dependencies",
        re.compile(
            r"^.*(?:Open dependencies|No matching distribution|Could not resolve"
            r"|unresolved dependency).*$",
            re.I | re.M,
        ),
        "Build only on dependencies that are already completed; do not stub missing ones.",
    ),
    LearningRule(
        "lint",
        re.compile(r"^.*(?:\b[EFW]\d{3}\b|ruff|flake8|eslint|Advisory lint).*$", re.M),
        "Run the project's linter on changed files before finishing.",
    ),
    LearningRule(
        "tests",
        re.compile(r"^.*(?:AssertionError|FAILED\b|\d+ failed|Regression in).*$", re.M),
        "Run the item's tests and the neighbouring suites before reporting completion.",
    ),
)

GENERAL_FIX = "Reproduce the failure locally and fix the root cause before retrying."

GATE_CATEGORIES = {3: "conflicts", 5: "lint"}

CATEGORY_AFFINITY: dict[Capability, set[str]] = {
    Capability.DATA_LAYER: {"types", "imports", "dependencies"},
    Capability.INTERFACE_LAYER: {"types", "imports", "tests"},
    Capability.PRESENTATION_LAYER: {"syntax", "lint", "types"},
    Capability.TEST: {"tests", "timeouts", "imports"},
    Capability.INTEGRATION: {"dependencies", "conflicts", "tests"},
    Capability.GENERAL: set(),
}

_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"0x[0-9a-fA-F]+"), "<hex>"),
    (re.compile(r"\b[0-9a-f]{7,40}\b"), "<sha>"),
    (re.compile(r"(?:[A-Za-z]:)?(?:[\w.\-]*/)+[\w.\-]+"), "<path>"),
    (re.compile(r"\bline \d+"), "line <n>"),
    (re.compile(r"\d+(?:\.\d+)?s\b"), "<n>s"),
    (re.compile(r"\b\d+\b"), "<n>"),
    (re.compile(r"\s+"), " "),
)


def normalize_pattern(line: str) -> str:
    normalized = line.strip()
    for pattern, replacement in _NORMALIZERS:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip()[:PATTERN_LIMIT]


def extract(output: str, *, gate: int | None = None) -> tuple[str, str, str]:
    """Return ``(category, pattern, fix)`` for a failure output."""
    forced = GATE_CATEGORIES.get(gate or 0)
    for rule in RULES:
        if forced and rule.category != forced:
            continue
        match = rule.matcher.search(output)
        if match:
            return rule.category, normalize_pattern(match.group(0)), rule.fix
    first_line = next((line for line in output.splitlines() if line.strip()), "")
    if forced:
        rule = next(rule for rule in RULES if rule.category == forced)
        return forced, normalize_pattern(first_line) or forced, rule.fix
    return "general", normalize_pattern(first_line) or "unclassified failure", GENERAL_FIX


def compute_trend(occurrences: list[str], window: timedelta, now: datetime | None = None) -> str:
    current = now or datetime.now(UTC)
    recent = previous = 0
    for raw in occurrences:
        seen = parse_iso(raw)
        if seen is None:
            continue
        age = current - seen
        if age <= window:
            recent += 1
        elif age <= window * 2:
            previous += 1
    if recent > previous:
        return "rising"
    if recent < previous:
        return "falling"
    return "stable"


class LearningStore:
    """Failure signatures aggregated into guidance for later workers.

    Advisory: storage problems are logged and swallowed so dispatch never waits on it.
    """

    NAMESPACE = "learnings"

    def __init__(
        self,
        state: GitNotesStore,
        *,
        top_n: int = 5,
        trend_window_hours: float = 24.0,
    ) -> None:
        self.state = state
        self.top_n = top_n
        self.window = timedelta(hours=trend_window_hours)

    def _load(self, payload: Any) -> dict[str, ImprovementRecord]:
        raw_records = payload.get("records", {}) if isinstance(payload, dict) else {}
        records: dict[str, ImprovementRecord] = {}
        if isinstance(raw_records, dict):
            for key, raw in raw_records.items():
                if isinstance(raw, dict) and "pattern" in raw:
                    records[str(key)] = ImprovementRecord.from_dict(raw)
        return records

    def records(self) -> list[ImprovementRecord]:
        return list(self._load(self.state.get_json(self.NAMESPACE, default={})).values())

    def record_failure(
        self,
        item: WorkItem,
        output: str | ValidationFailure,
        *,
        gate: int | None = None,
    ) -> ImprovementRecord | None:
        if isinstance(output, ValidationFailure):
            gate = output.gate if gate is None else gate
            output = f"{output}\n{output.output}"
        category, pattern, fix = extract(output, gate=gate)
        now = utcnow_iso()
        kind = item.capability.value
        stored: dict[str, ImprovementRecord] = {}

        def _upsert(payload: Any) -> dict[str, Any]:
            records = self._load(payload)
            key = f"{category}:{pattern}"
            record = records.get(key) or ImprovementRecord(
                pattern=pattern, fix=fix, category=category, first_seen=now
            )
            record.seen_count += 1
            record.last_seen = now
            record.occurrences = [*record.occurrences, now][-OCCURRENCE_LIMIT:]
            if kind not in record.item_kinds:
                record.item_kinds.append(kind)
            record.trend = compute_trend(record.occurrences, self.window)
            records[key] = record
            stored["record"] = record
            return {"records": {name: value.to_dict() for name, value in records.items()}}

        try:
            self.state.update_json(self.NAMESPACE, _upsert, default={})
        except (ConductorError, OSError, ValueError) as exc:
            logger.warning("Could not record learning for %s: %s", item.id, exc)
            return None
        return stored.get("record")

    def relevance(self, record: ImprovementRecord, item: WorkItem) -> int:
        score = 0
        if item.capability.value in record.item_kinds:
            score += 2
        if record.category in CATEGORY_AFFINITY.get(item.capability, set()):
            score += 1
        if item.conflict_attempt > 0 and record.category == "conflicts":
            score += 2
        if record.trend == "rising":
            score += 1
        return score

    def top_for(self, item: WorkItem, n: int | None = None) -> list[ImprovementRecord]:
        limit = self.top_n if n is None else n
        if limit <= 0:
            return []
        try:
            records = self.records()
        except (ConductorError, OSError, ValueError) as exc:
            logger.warning(
                "Learning store unavailable, dispatching %s without it: %s", item.id, exc
            )
            return []
        ranked = sorted(
            records,
            key=lambda record: (self.relevance(record, item), record.seen_count, record.last_seen),
            reverse=True,
        )
        return ranked[:limit]

    @staticmethod
    def guidance(records: list[ImprovementRecord]) -> str:
        if not records:
            return ""
        lines = ["Avoid these known mistakes:"]
        for record in records:
            lines.append(f"- [{record.category}] {record.pattern} -> {record.fix}")
        return "\n".join(lines)
