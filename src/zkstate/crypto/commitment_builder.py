"""Commitment builder — derives state ids, nullifiers, and commitment hashes.

    state_var_id (mapping)  = H(base_id, mapping_key)
    nullifier               = H(state_var_id, secret_key, salt)
    commitment              = H(state_var_id, value, public_key, salt)

The builder is deterministic except for fresh salts: given the same inputs
it produces the same hashes. Struct values are flattened in field order
before hashing.
"""

from __future__ import annotations

from typing import Callable, Mapping, Optional, Sequence, Union

from zkstate.crypto.field import (
    FIELD_MODULUS,
    HashFunction,
    field_hash,
    random_salt,
    to_int,
)

Value = Union[int, Mapping[str, int]]


def flatten_value(value: Value) -> list[int]:
    """Scalar value as a one-element list, struct value as its fields in order."""
    if isinstance(value, Mapping):
        return [to_int(v) for v in value.values()]
    return [to_int(value)]


class CommitmentBuilder:
    """Derives the hashes that bind a state value to its owner.

    Usage:
        builder = CommitmentBuilder()
        state_id = builder.state_var_id(base_id, mapping_key=owner)
        salt = builder.new_salt()
        commitment = builder.commitment_hash(state_id, 50, public_key, salt)
        nullifier = builder.nullifier(state_id, secret_key, salt)
    """

    def __init__(
        self,
        hasher: HashFunction = field_hash,
        salt_factory: Callable[[], int] = random_salt,
    ) -> None:
        self._hasher = hasher
        self._salt_factory = salt_factory

    @property
    def hasher(self) -> HashFunction:
        return self._hasher

    def state_var_id(self, base_id: object, mapping_key: Optional[object] = None) -> int:
        """Id of a state variable; mapping entries hash the key into it."""
        if mapping_key is None:
            return to_int(base_id)
        return self._hasher([to_int(base_id), to_int(mapping_key)])

    def state_var_id_from_parts(self, parts: Sequence[object]) -> int:
        """[base_id] or [base_id, mapping_key], as callers pass them around."""
        if not parts:
            raise ValueError("State variable id needs at least a base id")
        if len(parts) > 2:
            raise ValueError(f"State variable id has at most two parts, got {len(parts)}")
        return self.state_var_id(parts[0], parts[1] if len(parts) > 1 else None)

    def nullifier(self, state_var_id: object, secret_key: object, salt: object) -> int:
        return self._hasher([to_int(state_var_id), to_int(secret_key), to_int(salt)])

    def commitment_hash(
        self,
        state_var_id: object,
        value: Value,
        public_key: object,
        salt: object,
    ) -> int:
        return self._hasher(
            [to_int(state_var_id), *flatten_value(value), to_int(public_key), to_int(salt)]
        )

    def new_salt(self) -> int:
        return self._salt_factory()

    @staticmethod
    def add_values(first: int, second: int) -> int:
        """Sum of two scalar values, wrapped by the field modulus."""
        return (to_int(first) + to_int(second)) % FIELD_MODULUS
