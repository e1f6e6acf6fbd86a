"""Commitment store — records of every commitment this party knows about.

Documents are keyed by the commitment hash (32-byte hex). Secondary
lookups go by preimage.stateVarId and by state name / mapping key.

The backing store is pluggable: anything satisfying the CommitmentStore
protocol can be handed to the selector and the join saga. LocalCommitmentStore
keeps records in memory and, when given a storage path, mirrors them to a
JSON file that is reloaded on construction.

Invariants enforced here:
- is_nullified only ever moves from False to True.
- A nullifier, once recorded, never changes.
- Nullification of one hash is single-writer (a fixed set of lock
  stripes, chosen by hash modulo LOCK_STRIPES).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from zkstate.crypto.commitment_builder import CommitmentBuilder
from zkstate.crypto.field import to_hex32, to_int
from zkstate.errors import NotFound
from zkstate.models.commitment import Commitment

logger = logging.getLogger(__name__)

# Per-hash write locks, striped by hash.
LOCK_STRIPES = 64

_UPDATABLE_FIELDS = frozenset({"name", "mapping_key", "secret_key", "is_nullified", "nullifier"})


@runtime_checkable
class CommitmentStore(Protocol):
    """Contract toward the external commitment store."""

    def put(self, commitment: Commitment) -> Commitment:
        """Upsert by hash, deriving the nullifier when the secret key is known."""
        ...

    def get(self, commitment_hash: object) -> Commitment:
        """Load one commitment or raise NotFound."""
        ...

    def find_by_state_var_id(self, state_var_id: object) -> list[Commitment]:
        ...

    def find_current_unspent_by_state_var_id(self, state_var_id: object) -> Optional[Commitment]:
        ...

    def find_by_state_name(self, name: str, mapping_key: Optional[object] = None) -> list[Commitment]:
        ...

    def all(self) -> list[Commitment]:
        ...

    def update(self, commitment_hash: object, **changes: Any) -> Commitment:
        ...

    def mark_nullified(
        self,
        commitment_hash: object,
        fallback_secret_key: Optional[object] = None,
    ) -> Commitment:
        ...


class LocalCommitmentStore:
    """In-memory commitment store with optional JSON file persistence.

    Usage:
        store = LocalCommitmentStore(storage_path=Path("data/commitments.json"))
        store.put(commitment)
        unspent = store.find_current_unspent_by_state_var_id(state_var_id)
        store.mark_nullified(commitment.hash)
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        builder: Optional[CommitmentBuilder] = None,
    ) -> None:
        self._records: dict[int, Commitment] = {}
        self._storage_path = storage_path
        self._builder = builder or CommitmentBuilder()
        self._guard = threading.Lock()
        self._hash_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, commitment: Commitment) -> Commitment:
        """Upsert a commitment keyed by hash.

        The nullifier is derived eagerly whenever the secret key is known,
        even while the commitment is unspent.
        """
        if commitment.secret_key is not None and commitment.nullifier is None:
            commitment = replace(
                commitment,
                nullifier=self._derive_nullifier(commitment, commitment.secret_key),
            )
        with self._lock_for(commitment.hash):
            existing = self._records.get(commitment.hash)
            if existing is not None:
                _check_monotonic(existing, commitment)
            logger.debug("Storing commitment %s", commitment.hex_id)
            self._write(commitment)
        return commitment

    def update(self, commitment_hash: object, **changes: Any) -> Commitment:
        """Apply field changes to an existing commitment."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update commitment fields: {sorted(unknown)}")
        key = to_int(commitment_hash)
        with self._lock_for(key):
            existing = self._require(key)
            updated = replace(existing, **changes)
            _check_monotonic(existing, updated)
            self._write(updated)
        return updated

    def mark_nullified(
        self,
        commitment_hash: object,
        fallback_secret_key: Optional[object] = None,
    ) -> Commitment:
        """Mark a commitment spent and record its nullifier.

        Uses the commitment's own secret key, else `fallback_secret_key`.
        Calling this on an already nullified commitment changes nothing.
        Raises NotFound if no commitment has this hash.
        """
        key = to_int(commitment_hash)
        with self._lock_for(key):
            existing = self._require(key)
            if existing.is_nullified:
                logger.debug("Commitment %s already nullified", existing.hex_id)
                return existing

            secret_key = existing.secret_key
            if secret_key is None and fallback_secret_key is not None:
                secret_key = to_int(fallback_secret_key)
            if secret_key is None:
                raise ValueError(
                    f"No secret key available to nullify commitment {existing.hex_id}"
                )
            updated = replace(
                existing,
                is_nullified=True,
                nullifier=self._derive_nullifier(existing, secret_key),
            )
            self._write(updated)
        logger.debug("Nullified commitment %s", updated.hex_id)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, commitment_hash: object) -> Commitment:
        return self._require(to_int(commitment_hash))

    def find_by_state_var_id(self, state_var_id: object) -> list[Commitment]:
        target = to_int(state_var_id)
        return [c for c in self.all() if c.preimage.state_var_id == target]

    def find_current_unspent_by_state_var_id(self, state_var_id: object) -> Optional[Commitment]:
        """The live commitment of a whole (non-mapping) state variable."""
        for commitment in self.find_by_state_var_id(state_var_id):
            if not commitment.is_nullified:
                return commitment
        return None

    def find_by_state_name(
        self,
        name: str,
        mapping_key: Optional[object] = None,
    ) -> list[Commitment]:
        commitments = [c for c in self.all() if c.name == name]
        if mapping_key is not None:
            key = to_int(mapping_key)
            commitments = [c for c in commitments if c.mapping_key == key]
        return commitments

    def all(self) -> list[Commitment]:
        with self._guard:
            return list(self._records.values())

    def revealed_nullifiers(self) -> list[int]:
        """Nullifiers of every spent commitment, in store order."""
        return [
            c.nullifier for c in self.all()
            if c.is_nullified and c.nullifier is not None
        ]

    @property
    def count(self) -> int:
        with self._guard:
            return len(self._records)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _derive_nullifier(self, commitment: Commitment, secret_key: object) -> int:
        return self._builder.nullifier(
            commitment.preimage.state_var_id,
            secret_key,
            commitment.preimage.salt,
        )

    def _require(self, key: int) -> Commitment:
        with self._guard:
            record = self._records.get(key)
        if record is None:
            raise NotFound(to_hex32(key))
        return record

    def _lock_for(self, key: int) -> threading.Lock:
        return self._hash_locks[key % LOCK_STRIPES]

    def _write(self, commitment: Commitment) -> None:
        with self._guard:
            self._records[commitment.hash] = commitment
            if self._storage_path:
                self._save_to_file(self._storage_path)

    def _save_to_file(self, path: Path) -> None:
        """Rewrite the whole JSON document atomically. Caller holds the guard."""
        documents = [c.to_document() for c in self._records.values()]
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(documents, f, indent=2)
        os.replace(tmp_path, path)

    def _load_from_file(self, path: Path) -> None:
        """Load documents, rejecting duplicate ids."""
        with path.open("r", encoding="utf-8") as f:
            documents = json.load(f)
        for position, document in enumerate(documents):
            commitment = Commitment.from_document(document)
            if commitment.hash in self._records:
                raise ValueError(
                    f"Duplicate commitment id in {path} (entry {position}): "
                    f"{commitment.hex_id}"
                )
            self._records[commitment.hash] = commitment


def _check_monotonic(existing: Commitment, updated: Commitment) -> None:
    """Refuse to un-nullify a commitment or to change a revealed nullifier."""
    if existing.is_nullified and not updated.is_nullified:
        raise ValueError(f"Commitment {existing.hex_id} is nullified and cannot be restored")
    if (
        existing.is_nullified
        and existing.nullifier is not None
        and updated.nullifier != existing.nullifier
    ):
        raise ValueError(f"Nullifier of commitment {existing.hex_id} cannot change")
