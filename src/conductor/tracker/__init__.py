import logging
from pathlib import Path

from conductor.config import TrackerConfig
from conductor.state.records import WorkRecordStore
from conductor.tracker.base import DependencyGraph, DependencyTree
from conductor.tracker.beads import BeadsTracker
from conductor.tracker.insights import GraphInsights, GraphInsightsReport
from conductor.tracker.local import LocalTracker, load_graph_file

logger = logging.getLogger(__name__)


def build_tracker(
    config: TrackerConfig, repo_root: Path, records: WorkRecordStore
) -> DependencyGraph:
    if config.backend == "beads":
        tracker = BeadsTracker(
            repo_root, binary=config.binary, timeout_seconds=config.timeout_seconds
        )
        if tracker.available():
            return tracker
        logger.warning("Tracker binary %r not found; using the local work graph.", config.binary)
    return LocalTracker(records)


def build_insights(config: TrackerConfig, repo_root: Path) -> GraphInsights:
    return GraphInsights(
        repo_root,
        binary=config.insights_binary,
        enabled=config.insights_enabled,
        timeout_seconds=config.timeout_seconds,
    )


__all__ = [
    "BeadsTracker",
    "DependencyGraph",
    "DependencyTree",
    "GraphInsights",
    "GraphInsightsReport",
    "LocalTracker",
    "build_insights",
    "build_tracker",
    "load_graph_file",
]
