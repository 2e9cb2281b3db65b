from conductor.state.checkpoints import CheckpointLedger
from conductor.state.escalations import EscalationLog
from conductor.state.git_notes import GitNotesStore
from conductor.state.records import WorkRecordStore

__all__ = ["CheckpointLedger", "EscalationLog", "GitNotesStore", "WorkRecordStore"]
