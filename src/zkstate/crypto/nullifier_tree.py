"""Nullifier tree manager — the committed tree and the speculative tree.

Revealed nullifiers live in a sparse Merkle tree whose root the verifier
contract tracks. Two trees are kept:

- committed: the state considered final, matching the last confirmed root.
- temporary: committed plus every nullifier staged since, applied before
  the transaction revealing them is confirmed.

Lifecycle:
    stage_nullifier(n)   temporary := insert(temporary, n)
    promote()            committed := temporary   (after confirmation)

promote() is all-or-nothing; commit_nullifiers() moves only the nullifiers
of one confirmed transaction. A transaction that never confirms leaves the
temporary tree ahead of the committed one; restage(), discard_staged() or
rebuild() bring them back in line. Every mutation goes through one lock, so two
concurrent stages can never both start from the same prior tree.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from zkstate.crypto.field import FIELD_BITS, HashFunction, field_hash, to_int
from zkstate.crypto.merkle import DEFAULT_DEPTH, SparseMerkleTree, Witness

logger = logging.getLogger(__name__)


class NullifierTreeManager:
    """Owns the committed/temporary nullifier tree pair.

    Usage:
        trees = NullifierTreeManager(depth=32)
        trees.stage_nullifier(nullifier)
        witness = trees.membership_witness(nullifier)   # not yet revealed
        ...transaction confirmed...
        trees.promote()
        assert trees.membership_witness(nullifier).is_member
    """

    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        hasher: HashFunction = field_hash,
        field_bits: int = FIELD_BITS,
    ) -> None:
        self._lock = threading.RLock()
        self._depth = depth
        self._hasher = hasher
        self._field_bits = field_bits
        empty = SparseMerkleTree(depth=depth, hasher=hasher, field_bits=field_bits)
        self._committed = empty
        self._temporary = empty

    # ------------------------------------------------------------------
    # Tree state
    # ------------------------------------------------------------------

    @property
    def committed(self) -> SparseMerkleTree:
        """Snapshot of the committed tree. Trees are immutable."""
        with self._lock:
            return self._committed

    @property
    def temporary(self) -> SparseMerkleTree:
        with self._lock:
            return self._temporary

    @property
    def committed_root(self) -> int:
        return self.committed.root

    @property
    def staged_root(self) -> int:
        return self.temporary.root

    @property
    def has_staged_changes(self) -> bool:
        with self._lock:
            return self._temporary != self._committed

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def stage_nullifier(self, nullifier: object) -> int:
        """Insert a nullifier into the temporary tree. Returns the staged root."""
        value = to_int(nullifier)
        with self._lock:
            self._temporary = self._temporary.insert(value)
            root = self._temporary.root
        logger.debug("Staged nullifier 0x%064x, staged root 0x%064x", value, root)
        return root

    def stage_nullifiers(self, nullifiers: Iterable[object]) -> SparseMerkleTree:
        """Stage several nullifiers under one lock hold.

        Returns the committed tree as it stood while staging, which is the
        snapshot non-membership witnesses for these nullifiers come from.
        """
        values = [to_int(n) for n in nullifiers]
        with self._lock:
            snapshot = self._committed
            for value in values:
                self._temporary = self._temporary.insert(value)
            root = self._temporary.root
        logger.debug("Staged %d nullifiers, staged root 0x%064x", len(values), root)
        return snapshot

    def promote(self) -> int:
        """Make the temporary tree the committed tree. Returns the new root."""
        with self._lock:
            self._committed = self._temporary
            root = self._committed.root
        logger.info("Promoted nullifier tree, committed root 0x%064x", root)
        return root

    def commit_nullifiers(self, nullifiers: Iterable[object]) -> int:
        """Move only the given staged nullifiers into the committed tree.

        Other staged nullifiers stay staged. Returns the new committed root.
        """
        values = [to_int(n) for n in nullifiers]
        with self._lock:
            committed = self._committed
            temporary = self._temporary
            for value in values:
                committed = committed.insert(value)
                temporary = temporary.insert(value)
            self._committed = committed
            self._temporary = temporary
            root = committed.root
        logger.info("Committed %d nullifiers, committed root 0x%064x", len(values), root)
        return root

    def restage(self, nullifiers: Iterable[object]) -> int:
        """Rebuild the temporary tree as committed plus `nullifiers`.

        Used after a failed join: the caller passes the nullifiers of joins
        still live, and everything else staged is dropped. Returns the
        staged root.
        """
        values = [to_int(n) for n in nullifiers]
        with self._lock:
            temporary = self._committed
            for value in values:
                temporary = temporary.insert(value)
            dropped = self._temporary != temporary
            self._temporary = temporary
            root = temporary.root
        if dropped:
            logger.warning("Restaged %d live nullifiers, staged root 0x%064x", len(values), root)
        return root

    def discard_staged(self) -> None:
        """Drop every staged nullifier: temporary := committed."""
        with self._lock:
            self._temporary = self._committed
        logger.warning("Discarded staged nullifiers")

    def rebuild(self, nullifiers: Iterable[object]) -> int:
        """Rebuild both trees from the full list of revealed nullifiers."""
        with self._lock:
            tree = SparseMerkleTree(
                depth=self._depth,
                hasher=self._hasher,
                field_bits=self._field_bits,
            )
            for nullifier in nullifiers:
                tree = tree.insert(nullifier)
            self._committed = tree
            self._temporary = tree
            root = tree.root
        logger.info("Rebuilt nullifier tree, root 0x%064x", root)
        return root

    # ------------------------------------------------------------------
    # Witnesses
    # ------------------------------------------------------------------

    def membership_witness(self, nullifier: object) -> Witness:
        """Witness against the committed tree."""
        return self.committed.witness(nullifier)

    def staged_membership_witness(self, nullifier: object) -> Witness:
        """Witness against the temporary tree."""
        return self.temporary.witness(nullifier)
