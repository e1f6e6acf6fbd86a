"""Field elements and the hash primitive.

All hashes, keys, salts, and values handled by zkstate are elements of the
BN254 scalar field. They are kept as Python ints internally and written as
fixed-width 32-byte hex strings ("0x" + 64 hex digits) at the storage and
chain boundaries.

The default hash is SHA-256 over the 32-byte big-endian encoding of each
input, reduced into the field. It stands in for the circuit-friendly hash
(Poseidon) used by the proving circuits; any callable with the same shape
can be injected wherever a `hasher` argument is accepted.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Any, Callable, Sequence

# BN254 scalar field modulus
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617
FIELD_BITS = 254

HashFunction = Callable[[Sequence[int]], int]


def to_int(value: Any) -> int:
    """Normalise a field element given as int, hex string, decimal string, or bytes."""
    if isinstance(value, bool):
        raise TypeError("Booleans are not field elements")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text, 10)
    raise TypeError(f"Cannot convert {type(value).__name__} to a field element")


def to_hex32(value: Any) -> str:
    """Fixed-width 32-byte hex encoding with 0x prefix."""
    number = to_int(value)
    if number < 0 or number >= 1 << 256:
        raise ValueError(f"Value does not fit in 32 bytes: {number}")
    return f"0x{number:064x}"


def field_hash(values: Sequence[int]) -> int:
    """Hash a variable-length list of field elements to one field element."""
    digest = hashlib.sha256()
    for value in values:
        digest.update((to_int(value) % FIELD_MODULUS).to_bytes(32, "big"))
    return int.from_bytes(digest.digest(), "big") % FIELD_MODULUS


def random_salt(num_bytes: int = 31) -> int:
    """Fresh random salt; 31 bytes always fits in the field."""
    return int.from_bytes(secrets.token_bytes(num_bytes), "big")
