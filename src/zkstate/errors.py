"""Error taxonomy for commitment storage, selection, and joining.

Store and tree errors are raised to the immediate caller. The join saga
re-raises whatever stopped it without compensating; ExternalFailure wraps
errors coming out of the prover or the chain client unchanged in `cause`.

A selector that finds no usable pair is not an error: it returns an
INSUFFICIENT selection. InsufficientFunds is only raised by callers that
asked for a hard failure (select_or_raise).
"""

from __future__ import annotations

from typing import Optional


class ZappError(Exception):
    """Base class for all zkstate errors."""


class NotFound(ZappError):
    """Raised when no commitment matches the requested hash."""

    def __init__(self, commitment_hash: str) -> None:
        super().__init__(f"Commitment not found: {commitment_hash}")
        self.commitment_hash = commitment_hash


class InsufficientFunds(ZappError):
    """Raised when no pair of unspent commitments can cover a value."""


class InvalidTreeNode(ZappError):
    """Raised when a tree node is neither a Branch nor a Leaf.

    This signals structural corruption and is not recoverable.
    """


class AlreadyNullified(ZappError):
    """Raised when a join is attempted on a commitment that is already spent."""


class ExternalFailure(ZappError):
    """Raised when the prover or the chain client fails.

    `stage` names the call that failed ("prover", "chain.sign", ...).
    """

    def __init__(self, stage: str, cause: Optional[BaseException] = None) -> None:
        message = f"External call failed at {stage}"
        if cause is not None:
            message = f"{message}: {cause!r}"
        super().__init__(message)
        self.stage = stage
        self.cause = cause


class TransitionError(ZappError):
    """Raised when a join saga state transition is not allowed."""
