"""Input selection — choosing which commitments to spend."""

from zkstate.selection.selector import CommitmentSelector, GreedyStructSelector

__all__ = ["CommitmentSelector", "GreedyStructSelector"]
