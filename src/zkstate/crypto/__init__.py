"""Cryptographic primitives — field hashing, the sparse Merkle tree, commitments."""

from zkstate.crypto.commitment_builder import CommitmentBuilder
from zkstate.crypto.field import FIELD_BITS, FIELD_MODULUS, field_hash, random_salt
from zkstate.crypto.merkle import (
    DEFAULT_DEPTH,
    Branch,
    EmptySubtreeCache,
    Leaf,
    SparseMerkleTree,
    Witness,
)
from zkstate.crypto.nullifier_tree import NullifierTreeManager

__all__ = [
    "DEFAULT_DEPTH",
    "FIELD_BITS",
    "FIELD_MODULUS",
    "Branch",
    "CommitmentBuilder",
    "EmptySubtreeCache",
    "Leaf",
    "NullifierTreeManager",
    "SparseMerkleTree",
    "Witness",
    "field_hash",
    "random_salt",
]
