"""Persistence — commitment records and the join recovery log."""

from zkstate.persistence.commitment_store import CommitmentStore, LocalCommitmentStore
from zkstate.persistence.event_log import JoinEventKind, JoinEventLog, JoinEventRecord

__all__ = [
    "CommitmentStore",
    "LocalCommitmentStore",
    "JoinEventKind",
    "JoinEventLog",
    "JoinEventRecord",
]
