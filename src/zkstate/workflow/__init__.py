"""Workflows that touch the chain — currently the join saga."""

from zkstate.workflow.join_saga import (
    JOIN_TRANSITIONS,
    JoinCommitmentsSaga,
    JoinRequest,
    JoinResult,
    JoinState,
    JoinStatus,
    assemble_join_inputs,
)

__all__ = [
    "JOIN_TRANSITIONS",
    "JoinCommitmentsSaga",
    "JoinRequest",
    "JoinResult",
    "JoinState",
    "JoinStatus",
    "assemble_join_inputs",
]
