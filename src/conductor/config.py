from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from conductor.models import RetryPolicy

BackendName = Literal["codex", "claude"]
StateBackendName = Literal["notes", "branch", "local"]
TrackerBackendName = Literal["beads", "local"]

CONFIG_FILENAME = "conductor.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    integration_command: str = ""
    lint_command: str = "ruff check ."
    type_check_command: str = ""
    command_timeout_seconds: float = 900.0


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class AgentsConfig:
    worker_model: str = ""


@dataclass(slots=True)
class PoolConfig:
    size: int = 5
    heartbeat_seconds: float = 10.0
    worker_timeout_seconds: float = 1800.0


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_seconds: float = 30.0
    backoff_max_seconds: float = 600.0

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, int(self.max_attempts)),
            backoff_seconds=max(0.0, float(self.backoff_seconds)),
            backoff_max_seconds=max(0.0, float(self.backoff_max_seconds)),
        )


@dataclass(slots=True)
class SchedulerConfig:
    blocked_items_conflict: bool = False


@dataclass(slots=True)
class ValidationConfig:
    regression_sample: bool = True
    quality_checks: bool = True


@dataclass(slots=True)
class LearningConfig:
    top_n: int = 5
    trend_window_hours: float = 24.0


@dataclass(slots=True)
class TrackerConfig:
    backend: TrackerBackendName = "beads"
    binary: str = "bd"
    insights_binary: str = "bv"
    insights_enabled: bool = True
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "notes"
    branch_ref: str = "conductor/state"


_SECTIONS = (
    "project",
    "backend",
    "agents",
    "pool",
    "retry",
    "scheduler",
    "validation",
    "learning",
    "tracker",
    "state",
)


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            pool=PoolConfig(**data.get("pool", {})),
            retry=RetryConfig(**data.get("retry", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            validation=ValidationConfig(**data.get("validation", {})),
            learning=LearningConfig(**data.get("learning", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in _SECTIONS}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
