"""Core data models for zkstate."""

from zkstate.models.commitment import (
    Commitment,
    Preimage,
    Selection,
    SelectionOutcome,
)

__all__ = [
    "Commitment",
    "Preimage",
    "Selection",
    "SelectionOutcome",
]
