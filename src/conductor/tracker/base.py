from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from conductor.models import Capability, Status, WorkItem


@dataclass(slots=True)
class DependencyTree:
    root: str
    nodes: dict[str, WorkItem] = field(default_factory=dict)
    edges: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "nodes": sorted(self.nodes),
            "edges": [list(edge) for edge in self.edges],
        }


class DependencyGraph(ABC):
    """Read/write view over the external issue tracker holding the work graph.

    Implementations never raise on tracker outages: queries degrade to empty
    results and mutations become no-ops that return ``False``.
    """

    @property
    def degraded(self) -> bool:
        """True while the last tracker call failed and results are permissive defaults."""
        return False

    @abstractmethod
    def list_all(self) -> list[WorkItem]:
        """Every open or in-flight item known to the tracker."""

    @abstractmethod
    def list_ready(self) -> list[WorkItem]:
        """Items the tracker considers unblocked."""

    @abstractmethod
    def dependency_tree(self, item_id: str) -> DependencyTree:
        """Transitive dependencies of ``item_id``."""

    @abstractmethod
    def cycle_check(self) -> list[list[str]]:
        """Dependency cycles as lists of item ids."""

    @abstractmethod
    def update_status(self, item_id: str, status: Status) -> bool: ...

    @abstractmethod
    def close(self, item_id: str, reason: str) -> bool: ...

    @abstractmethod
    def create(
        self, title: str, kind: Capability, deps: list[str], *, description: str = ""
    ) -> WorkItem | None: ...
