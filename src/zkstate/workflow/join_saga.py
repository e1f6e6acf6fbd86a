"""Join saga — combines two commitments of one state variable into one.

When no single pair of commitments covers a spend but the owner's total
does, two commitments are joined on chain: both are nullified and a new
commitment holding their sum is created. The saga runs these steps in
order and stops at the first failure:

    1. derive nullifiers      stage them, take witnesses from the committed tree
    2. derive new commitment  value = v0 + v1, fresh salt
    3. assemble inputs        fixed order expected by the joinCommitments circuit
    4. request proof          external prover
    5. submit transaction     encode, sign, send, wait for the join event
    6. post-commit            nullify the inputs, store the new commitment

Nothing in the commitment store changes before step 5 confirms. A failure
is recorded on the saga state and re-raised; no compensation is attempted.
Staged nullifiers of a failed join stay in the temporary tree until the
owner discards or rebuilds it.

Step 6 is replayable: the confirmation is appended to the join event log
before the store is touched, and replay_post_commit() skips anything
already applied.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from zkstate.crypto.commitment_builder import CommitmentBuilder
from zkstate.crypto.field import to_hex32, to_int
from zkstate.crypto.merkle import Witness
from zkstate.crypto.nullifier_tree import NullifierTreeManager
from zkstate.errors import AlreadyNullified, ExternalFailure, NotFound, TransitionError
from zkstate.external.chain import ChainClient
from zkstate.external.prover import Prover, flatten_proof
from zkstate.external.retry import CallPolicy
from zkstate.models.commitment import Commitment, Preimage
from zkstate.persistence.commitment_store import CommitmentStore
from zkstate.persistence.event_log import JoinEventKind, JoinEventLog, JoinEventRecord

logger = logging.getLogger(__name__)


class JoinStatus(str, enum.Enum):
    """Status of a join saga."""
    PENDING = "pending"
    NULLIFIERS_DERIVED = "nullifiers_derived"
    COMMITMENT_DERIVED = "commitment_derived"
    INPUTS_ASSEMBLED = "inputs_assembled"
    PROOF_GENERATED = "proof_generated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"


JOIN_TRANSITIONS: dict[JoinStatus, frozenset] = {
    JoinStatus.PENDING: frozenset({JoinStatus.NULLIFIERS_DERIVED, JoinStatus.FAILED}),
    JoinStatus.NULLIFIERS_DERIVED: frozenset({JoinStatus.COMMITMENT_DERIVED, JoinStatus.FAILED}),
    JoinStatus.COMMITMENT_DERIVED: frozenset({JoinStatus.INPUTS_ASSEMBLED, JoinStatus.FAILED}),
    JoinStatus.INPUTS_ASSEMBLED: frozenset({JoinStatus.PROOF_GENERATED, JoinStatus.FAILED}),
    JoinStatus.PROOF_GENERATED: frozenset({JoinStatus.SUBMITTED, JoinStatus.FAILED}),
    JoinStatus.SUBMITTED: frozenset({JoinStatus.CONFIRMED, JoinStatus.FAILED}),
    JoinStatus.CONFIRMED: frozenset({JoinStatus.COMPLETED, JoinStatus.FAILED}),
    JoinStatus.COMPLETED: frozenset(),
    JoinStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class JoinRequest:
    """What to join and on whose behalf.

    `state_var_id` is [base_id] for a whole state variable or
    [base_id, mapping_key] for a mapping entry.
    """
    state_name: str
    state_var_id: Sequence[int]
    secret_key: int
    public_key: int
    commitments: tuple[Commitment, Commitment]

    @property
    def is_mapping(self) -> bool:
        return len(self.state_var_id) > 1

    @property
    def mapping_key(self) -> Optional[int]:
        return to_int(self.state_var_id[1]) if self.is_mapping else None


@dataclass
class JoinState:
    """Tracks one run of the join saga."""
    join_id: str
    request: JoinRequest
    status: JoinStatus = JoinStatus.PENDING
    state_var_id: Optional[int] = None
    nullifiers: tuple[int, ...] = ()
    witnesses: tuple[Witness, ...] = ()
    root: Optional[int] = None
    new_commitment: Optional[Commitment] = None
    inputs: list[int] = field(default_factory=list)
    proof: list[int] = field(default_factory=list)
    tx_hash: Optional[str] = None
    event: Optional[Mapping[str, Any]] = None
    failed_at: Optional[JoinStatus] = None
    error: Optional[str] = None
    created_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None

    def transition_to(self, new_status: JoinStatus) -> None:
        """Move to a new status, validating the transition is legal."""
        allowed = JOIN_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise TransitionError(
                f"Invalid join transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.status = new_status


@dataclass(frozen=True)
class JoinResult:
    """Outcome of a completed join."""
    join_id: str
    new_commitment: Commitment
    nullifiers: tuple[int, int]
    root: int
    tx_hash: Optional[str]
    event: Optional[Mapping[str, Any]]


class JoinCommitmentsSaga:
    """Runs joins against a store, a tree pair, a prover, and a chain.

    Usage:
        saga = JoinCommitmentsSaga(store, trees, prover, chain, event_log=log)
        result = await saga.run(JoinRequest(
            state_name="balances",
            state_var_id=[base_id, owner],
            secret_key=sk,
            public_key=pk,
            commitments=(first, second),
        ))
        trees.promote()
    """

    CIRCUIT_NAME = "joinCommitments"

    def __init__(
        self,
        store: CommitmentStore,
        trees: NullifierTreeManager,
        prover: Prover,
        chain: ChainClient,
        builder: Optional[CommitmentBuilder] = None,
        prover_policy: Optional[CallPolicy] = None,
        chain_policy: Optional[CallPolicy] = None,
        event_log: Optional[JoinEventLog] = None,
    ) -> None:
        self._store = store
        self._trees = trees
        self._prover = prover
        self._chain = chain
        self._builder = builder or CommitmentBuilder()
        self._prover_policy = prover_policy or CallPolicy()
        self._chain_policy = chain_policy or CallPolicy()
        self._event_log = event_log
        self._joins: dict[str, JoinState] = {}

    def get_join(self, join_id: str) -> Optional[JoinState]:
        return self._joins.get(join_id)

    @property
    def joins(self) -> list[JoinState]:
        return list(self._joins.values())

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, request: JoinRequest) -> JoinResult:
        """Run every step of the join. Raises whatever stopped it."""
        state = JoinState(
            join_id=f"join_{uuid.uuid4().hex[:12]}",
            request=request,
            created_utc=datetime.now(timezone.utc),
        )
        self._joins[state.join_id] = state
        first, second = request.commitments
        logger.warning(
            "Joining commitments %s and %s of %s; the spend needs an extra transaction",
            first.hex_id, second.hex_id, request.state_name,
        )

        try:
            self._derive_nullifiers(state)
            self._derive_commitment(state)
            self._assemble_inputs(state)
            await self._request_proof(state)
            await self._submit(state)
            record = self._record_confirmation(state)
            self._apply_post_commit(state.join_id, record.payload if record else self._payload(state))
        except Exception as exc:
            self._fail(state, exc)
            raise

        state.transition_to(JoinStatus.COMPLETED)
        state.completed_utc = datetime.now(timezone.utc)
        logger.info("Join %s completed, new commitment %s", state.join_id, state.new_commitment.hex_id)
        return JoinResult(
            join_id=state.join_id,
            new_commitment=state.new_commitment,
            nullifiers=(state.nullifiers[0], state.nullifiers[1]),
            root=state.root,
            tx_hash=state.tx_hash,
            event=state.event,
        )

    def _fail(self, state: JoinState, exc: Exception) -> None:
        state.failed_at = state.status
        state.error = str(exc)
        state.transition_to(JoinStatus.FAILED)
        logger.error("Join %s failed after %s: %s", state.join_id, state.failed_at.value, exc)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _derive_nullifiers(self, state: JoinState) -> None:
        request = state.request
        first, second = request.commitments
        if first.hash == second.hash:
            raise ValueError(f"Cannot join commitment {first.hex_id} with itself")
        for commitment in request.commitments:
            if commitment.preimage.is_struct:
                raise ValueError(f"Cannot join struct commitment {commitment.hex_id}")
            if commitment.is_nullified or self._stored_as_nullified(commitment):
                raise AlreadyNullified(f"Commitment {commitment.hex_id} is already nullified")

        state_var_id = self._builder.state_var_id_from_parts(request.state_var_id)
        for commitment in request.commitments:
            if commitment.preimage.state_var_id != state_var_id:
                raise ValueError(
                    f"Commitment {commitment.hex_id} belongs to state "
                    f"{to_hex32(commitment.preimage.state_var_id)}, not {to_hex32(state_var_id)}"
                )

        nullifiers = tuple(
            self._builder.nullifier(state_var_id, request.secret_key, c.preimage.salt)
            for c in request.commitments
        )
        snapshot = self._trees.committed
        for nullifier in nullifiers:
            if snapshot.contains(nullifier):
                raise AlreadyNullified(f"Nullifier {to_hex32(nullifier)} was already revealed")

        snapshot = self._trees.stage_nullifiers(nullifiers)
        state.state_var_id = state_var_id
        state.nullifiers = nullifiers
        state.witnesses = tuple(snapshot.witness(n) for n in nullifiers)
        state.root = snapshot.root
        state.transition_to(JoinStatus.NULLIFIERS_DERIVED)
        logger.info("Join %s: derived and staged nullifiers", state.join_id)

    def _stored_as_nullified(self, commitment: Commitment) -> bool:
        try:
            return self._store.get(commitment.hash).is_nullified
        except NotFound:
            return False

    def _derive_commitment(self, state: JoinState) -> None:
        request = state.request
        first, second = request.commitments
        new_value = self._builder.add_values(
            first.preimage.scalar_value(), second.preimage.scalar_value(),
        )
        new_salt = self._builder.new_salt()
        new_hash = self._builder.commitment_hash(
            state.state_var_id, new_value, request.public_key, new_salt,
        )
        state.new_commitment = Commitment(
            hash=new_hash,
            name=request.state_name,
            mapping_key=request.mapping_key,
            secret_key=to_int(request.secret_key),
            preimage=Preimage(
                state_var_id=state.state_var_id,
                value=new_value,
                salt=new_salt,
                public_key=to_int(request.public_key),
            ),
        )
        state.transition_to(JoinStatus.COMMITMENT_DERIVED)
        logger.info("Join %s: derived new commitment %s", state.join_id, state.new_commitment.hex_id)

    def _assemble_inputs(self, state: JoinState) -> None:
        state.inputs = assemble_join_inputs(state)
        state.transition_to(JoinStatus.INPUTS_ASSEMBLED)

    async def _request_proof(self, state: JoinState) -> None:
        response = await self._prover_policy.run(
            "prover", self._prover.generate_proof, self.CIRCUIT_NAME, state.inputs,
        )
        try:
            state.proof = flatten_proof(response["proof"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalFailure("prover", exc) from exc
        state.transition_to(JoinStatus.PROOF_GENERATED)
        logger.info("Join %s: proof generated (%d coefficients)", state.join_id, len(state.proof))

    async def _submit(self, state: JoinState) -> None:
        first, second = state.nullifiers
        try:
            data = self._chain.encode_call(
                self.CIRCUIT_NAME,
                [[first, second], state.root, [state.new_commitment.hash], state.proof],
            )
        except Exception as exc:
            raise ExternalFailure("chain.encode", exc) from exc

        tx_params = await self._chain_policy.run("chain.build", self._chain.build_transaction, data)
        signed = await self._chain_policy.run("chain.sign", self._chain.sign, tx_params)
        state.transition_to(JoinStatus.SUBMITTED)

        # A sent transaction is never resent and never abandoned by a timeout.
        send_policy = self._chain_policy.single_attempt().without_timeout()
        receipt = await send_policy.run("chain.send", self._chain.send, signed)
        events = list(receipt.get("events") or [])
        if not events:
            raise ExternalFailure("chain.send", ValueError("Transaction emitted no events"))
        state.event = events[0]
        tx_hash = receipt.get("tx_hash")
        state.tx_hash = str(tx_hash) if tx_hash is not None else None
        state.transition_to(JoinStatus.CONFIRMED)
        logger.info("Join %s: confirmed on chain (tx %s)", state.join_id, state.tx_hash)

    # ------------------------------------------------------------------
    # Post-commit
    # ------------------------------------------------------------------

    def _payload(self, state: JoinState) -> dict[str, Any]:
        """Everything step 6 needs, as plain JSON."""
        return {
            "state_name": state.request.state_name,
            "spent": [c.hex_id for c in state.request.commitments],
            "secret_key": to_hex32(state.request.secret_key),
            "nullifiers": [to_hex32(n) for n in state.nullifiers],
            "root": to_hex32(state.root),
            "new_commitment": state.new_commitment.to_document(),
            "tx_hash": state.tx_hash,
        }

    def _record_confirmation(self, state: JoinState) -> Optional[JoinEventRecord]:
        if self._event_log is None:
            return None
        record = JoinEventRecord.create(
            event_kind=JoinEventKind.JOIN_CONFIRMED,
            join_id=state.join_id,
            payload=self._payload(state),
        )
        self._event_log.append(record)
        return record

    def _apply_post_commit(self, join_id: str, payload: Mapping[str, Any]) -> Commitment:
        """Nullify the spent inputs and store the new commitment. Idempotent."""
        for spent in payload["spent"]:
            self._store.mark_nullified(spent, fallback_secret_key=payload["secret_key"])

        new_commitment = Commitment.from_document(payload["new_commitment"])
        try:
            stored = self._store.get(new_commitment.hash)
        except NotFound:
            stored = self._store.put(new_commitment)

        if self._event_log is not None and not self._event_log.is_applied(join_id):
            self._event_log.append(JoinEventRecord.create(
                event_kind=JoinEventKind.POST_COMMIT_APPLIED,
                join_id=join_id,
                payload={"new_commitment": new_commitment.hex_id},
            ))
        logger.info("Join %s: store updated", join_id)
        return stored

    def replay_post_commit(self, record: JoinEventRecord) -> Commitment:
        """Redo step 6 for a confirmed join. Safe to call any number of times."""
        if record.event_kind != JoinEventKind.JOIN_CONFIRMED:
            raise ValueError(f"Cannot replay {record.event_kind.value} event {record.event_id}")
        logger.info("Replaying post-commit updates of join %s", record.join_id)
        return self._apply_post_commit(record.join_id, record.payload)


def assemble_join_inputs(state: JoinState) -> list[int]:
    """Circuit inputs for joinCommitments, in the order the circuit expects.

    [from_id, state_var_id, is_mapping, sk, sk, n0, n1, v0, salt0, v1, salt1,
     root, index0, *path0, index1, *path1, pk, new_salt, new_commitment]
    """
    request = state.request
    first, second = request.commitments
    if request.is_mapping:
        from_id = to_int(request.mapping_key)
        state_slot = to_int(request.state_var_id[0])
    else:
        from_id = 0
        state_slot = state.state_var_id
    secret_key = to_int(request.secret_key)
    witness_0, witness_1 = state.witnesses
    new = state.new_commitment

    inputs: list[int] = [
        from_id,
        state_slot,
        1 if request.is_mapping else 0,
        secret_key,
        secret_key,
        state.nullifiers[0],
        state.nullifiers[1],
        first.preimage.scalar_value(),
        first.preimage.salt,
        second.preimage.scalar_value(),
        second.preimage.salt,
        state.root,
        witness_0.index,
        *witness_0.path,
        witness_1.index,
        *witness_1.path,
        new.public_key,
        new.preimage.salt,
        new.hash,
    ]
    return inputs
