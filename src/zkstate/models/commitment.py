"""Commitment record model.

A commitment binds a hidden state value to its owner and is published on
chain as a single hash. Off chain we keep the full preimage so the owner
can later spend it by revealing the nullifier.

Lifecycle:
    created   is_nullified=False   (put)
    spent     is_nullified=True    (mark_nullified, one-way)

Records are never deleted. The store derives the nullifier as soon as the
secret key is known, so an unspent owned commitment already carries it;
it only becomes public once is_nullified is set.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from zkstate.crypto.field import to_hex32, to_int

Value = Union[int, Mapping[str, int]]


@dataclass(frozen=True)
class Preimage:
    """The hidden fields hashed into a commitment."""
    state_var_id: int
    value: Value
    salt: int
    public_key: int

    @property
    def is_struct(self) -> bool:
        return isinstance(self.value, Mapping)

    def scalar_value(self) -> int:
        if self.is_struct:
            raise ValueError("Struct commitment has no scalar value")
        return int(self.value)  # type: ignore[arg-type]

    def field_values(self) -> list[int]:
        """Struct fields in order, or the scalar as a one-element list."""
        if isinstance(self.value, Mapping):
            return [int(v) for v in self.value.values()]
        return [int(self.value)]


@dataclass(frozen=True)
class Commitment:
    """A stored commitment, keyed by its hash."""
    hash: int
    name: str
    preimage: Preimage
    mapping_key: Optional[int] = None
    secret_key: Optional[int] = None
    is_nullified: bool = False
    nullifier: Optional[int] = None

    @property
    def public_key(self) -> int:
        return self.preimage.public_key

    @property
    def hex_id(self) -> str:
        return to_hex32(self.hash)

    def to_document(self) -> dict[str, Any]:
        """Store document: 32-byte hex ids, values as integer strings."""
        value: Any
        if isinstance(self.preimage.value, Mapping):
            value = {k: str(int(v)) for k, v in self.preimage.value.items()}
        else:
            value = str(int(self.preimage.value))
        return {
            "_id": self.hex_id,
            "name": self.name,
            "mappingKey": str(self.mapping_key) if self.mapping_key is not None else None,
            "secretKey": to_hex32(self.secret_key) if self.secret_key is not None else None,
            "preimage": {
                "stateVarId": to_hex32(self.preimage.state_var_id),
                "value": value,
                "salt": to_hex32(self.preimage.salt),
                "publicKey": to_hex32(self.preimage.public_key),
            },
            "isNullified": self.is_nullified,
            "nullifier": to_hex32(self.nullifier) if self.nullifier is not None else None,
        }

    @staticmethod
    def from_document(data: Mapping[str, Any]) -> Commitment:
        raw = data["preimage"]
        raw_value = raw["value"]
        value: Value
        if isinstance(raw_value, Mapping):
            value = {k: to_int(v) for k, v in raw_value.items()}
        else:
            value = to_int(raw_value)
        return Commitment(
            hash=to_int(data["_id"]),
            name=data["name"],
            mapping_key=_optional_int(data.get("mappingKey")),
            secret_key=_optional_int(data.get("secretKey")),
            preimage=Preimage(
                state_var_id=to_int(raw["stateVarId"]),
                value=value,
                salt=to_int(raw["salt"]),
                public_key=to_int(raw["publicKey"]),
            ),
            is_nullified=bool(data.get("isNullified", False)),
            nullifier=_optional_int(data.get("nullifier")),
        )


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return to_int(value)


class SelectionOutcome(str, enum.Enum):
    """Which sufficiency condition a selection met."""
    DIRECT_PAIR_SUFFICIENT = "direct_pair_sufficient"  # top two cover the value
    JOIN_REQUIRED = "join_required"  # only the total covers it
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class Selection:
    """Result of picking input commitments for a spend."""
    outcome: SelectionOutcome
    first: Optional[Commitment] = None
    second: Optional[Commitment] = None

    @property
    def found(self) -> bool:
        return self.outcome != SelectionOutcome.INSUFFICIENT

    @property
    def pair(self) -> tuple[Commitment, Commitment]:
        if self.first is None or self.second is None:
            raise ValueError("Selection has no commitment pair")
        return self.first, self.second
