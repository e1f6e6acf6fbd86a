"""zkstate — private state commitments, nullifier trees, and joins."""

__version__ = "0.1.0"
