"""Tests for the join saga — proves nothing is stored before confirmation."""

import asyncio
from typing import Any, Mapping, Sequence

import pytest

from zkstate.crypto.commitment_builder import CommitmentBuilder
from zkstate.crypto.field import field_hash
from zkstate.crypto.nullifier_tree import NullifierTreeManager
from zkstate.errors import AlreadyNullified, ExternalFailure, TransitionError
from zkstate.external.retry import CallPolicy
from zkstate.models.commitment import Commitment, Preimage, SelectionOutcome
from zkstate.persistence.commitment_store import LocalCommitmentStore
from zkstate.persistence.event_log import JoinEventKind, JoinEventLog
from zkstate.selection.selector import CommitmentSelector
from zkstate.workflow.join_saga import (
    JoinCommitmentsSaga,
    JoinRequest,
    JoinState,
    JoinStatus,
)

BASE_ID = 9
MAPPING_KEY = 0x5EED
SECRET_KEY = 0x5EC2E7
PUBLIC_KEY = 0x9B11C
NEW_SALT = 777
DEPTH = 16


class FakeProver:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, list[int]]] = []

    async def generate_proof(self, circuit_name: str, inputs: Sequence[int]) -> Mapping[str, Any]:
        self.calls.append((circuit_name, list(inputs)))
        if self.fail:
            raise ConnectionError("prover unreachable")
        return {"proof": {"a": [1, 2], "b": [[3, 4], [5, 6]], "c": [7, 8]}}


class FakeChain:
    def __init__(self, fail_send: bool = False, events: bool = True) -> None:
        self.fail_send = fail_send
        self.with_events = events
        self.encoded: list[tuple[str, list[Any]]] = []
        self.sent = 0

    def encode_call(self, method: str, args: Sequence[Any]) -> bytes:
        self.encoded.append((method, list(args)))
        return b"\x01\x02"

    async def build_transaction(self, data: bytes) -> dict[str, Any]:
        return {"data": data, "gas": 6_000_000}

    async def sign(self, tx_params: Mapping[str, Any]) -> Any:
        return {"signed": dict(tx_params)}

    async def send(self, signed_tx: Any) -> Mapping[str, Any]:
        self.sent += 1
        if self.fail_send:
            raise ConnectionError("node unreachable")
        events = [{"event": "JoinCommitments", "log_index": 0}] if self.with_events else []
        return {"tx_hash": "ab" * 32, "events": events}


def _builder() -> CommitmentBuilder:
    return CommitmentBuilder(salt_factory=lambda: NEW_SALT)


def _state_var_id(mapping: bool = True) -> int:
    return field_hash([BASE_ID, MAPPING_KEY]) if mapping else BASE_ID


def _commitment(value: int, salt: int, mapping: bool = True) -> Commitment:
    state_var_id = _state_var_id(mapping)
    return Commitment(
        hash=_builder().commitment_hash(state_var_id, value, PUBLIC_KEY, salt),
        name="balances",
        mapping_key=MAPPING_KEY if mapping else None,
        secret_key=SECRET_KEY,
        preimage=Preimage(state_var_id, value, salt, PUBLIC_KEY),
    )


def _setup(
    prover: FakeProver | None = None,
    chain: FakeChain | None = None,
    mapping: bool = True,
    event_log: JoinEventLog | None = None,
) -> tuple[JoinCommitmentsSaga, LocalCommitmentStore, NullifierTreeManager, tuple[Commitment, Commitment]]:
    store = LocalCommitmentStore()
    trees = NullifierTreeManager(depth=DEPTH)
    first = store.put(_commitment(30, salt=101, mapping=mapping))
    second = store.put(_commitment(20, salt=102, mapping=mapping))
    saga = JoinCommitmentsSaga(
        store=store,
        trees=trees,
        prover=prover or FakeProver(),
        chain=chain or FakeChain(),
        builder=_builder(),
        event_log=event_log,
    )
    return saga, store, trees, (first, second)


def _request(pair: tuple[Commitment, Commitment], mapping: bool = True) -> JoinRequest:
    return JoinRequest(
        state_name="balances",
        state_var_id=[BASE_ID, MAPPING_KEY] if mapping else [BASE_ID],
        secret_key=SECRET_KEY,
        public_key=PUBLIC_KEY,
        commitments=pair,
    )


class TestJoinHappyPath:
    def test_end_to_end_thirty_plus_twenty(self) -> None:
        saga, store, trees, pair = _setup()
        selection = CommitmentSelector().select_inputs(PUBLIC_KEY, 45, store.all())
        assert selection.outcome == SelectionOutcome.DIRECT_PAIR_SUFFICIENT

        result = asyncio.run(saga.run(_request(selection.pair)))

        assert result.new_commitment.preimage.value == 50
        assert all(store.get(c.hash).is_nullified for c in pair)
        unspent = [c for c in store.all() if not c.is_nullified]
        assert len(unspent) == 1
        assert unspent[0].hash == result.new_commitment.hash
        assert unspent[0].preimage.value == 50
        assert saga.get_join(result.join_id).status == JoinStatus.COMPLETED

    def test_new_commitment_hash(self) -> None:
        saga, _, _, pair = _setup()
        result = asyncio.run(saga.run(_request(pair)))
        expected = field_hash([_state_var_id(), 50, PUBLIC_KEY, NEW_SALT])
        assert result.new_commitment.hash == expected
        assert result.new_commitment.mapping_key == MAPPING_KEY

    def test_nullifiers_staged_not_promoted(self) -> None:
        saga, _, trees, pair = _setup()
        result = asyncio.run(saga.run(_request(pair)))
        for nullifier in result.nullifiers:
            assert trees.temporary.contains(nullifier)
            assert not trees.committed.contains(nullifier)
        assert result.root == trees.committed_root

    def test_nullifier_layout(self) -> None:
        saga, _, _, pair = _setup()
        result = asyncio.run(saga.run(_request(pair)))
        assert result.nullifiers == (
            field_hash([_state_var_id(), SECRET_KEY, 101]),
            field_hash([_state_var_id(), SECRET_KEY, 102]),
        )

    def test_mapping_circuit_inputs(self) -> None:
        prover = FakeProver()
        saga, _, trees, pair = _setup(prover=prover)
        result = asyncio.run(saga.run(_request(pair)))
        circuit, inputs = prover.calls[0]
        n0, n1 = result.nullifiers

        assert circuit == "joinCommitments"
        assert inputs[:12] == [
            MAPPING_KEY, BASE_ID, 1, SECRET_KEY, SECRET_KEY,
            n0, n1, 30, 101, 20, 102, trees.committed_root,
        ]
        assert len(inputs) == 12 + 2 * (1 + DEPTH) + 3
        assert inputs[-3:] == [PUBLIC_KEY, NEW_SALT, result.new_commitment.hash]
        witness_0 = trees.committed.witness(n0)
        assert inputs[12] == witness_0.index
        assert inputs[13:13 + DEPTH] == list(witness_0.path)

    def test_plain_state_circuit_inputs(self) -> None:
        prover = FakeProver()
        saga, _, _, pair = _setup(prover=prover, mapping=False)
        asyncio.run(saga.run(_request(pair, mapping=False)))
        _, inputs = prover.calls[0]
        assert inputs[:3] == [0, BASE_ID, 0]

    def test_chain_call_arguments(self) -> None:
        chain = FakeChain()
        saga, _, _, pair = _setup(chain=chain)
        result = asyncio.run(saga.run(_request(pair)))
        method, args = chain.encoded[0]
        assert method == "joinCommitments"
        assert args[0] == list(result.nullifiers)
        assert args[1] == result.root
        assert args[2] == [result.new_commitment.hash]
        assert args[3] == [1, 2, 3, 4, 5, 6, 7, 8]
        assert result.event == {"event": "JoinCommitments", "log_index": 0}
        assert result.tx_hash == "ab" * 32


class TestJoinAtomicity:
    def test_prover_failure_changes_nothing_stored(self) -> None:
        saga, store, _, pair = _setup(prover=FakeProver(fail=True))
        before = store.all()
        with pytest.raises(ExternalFailure) as exc_info:
            asyncio.run(saga.run(_request(pair)))
        assert exc_info.value.stage == "prover"
        assert store.all() == before
        assert not any(c.is_nullified for c in store.all())

        state = saga.joins[0]
        assert state.status == JoinStatus.FAILED
        assert state.failed_at == JoinStatus.INPUTS_ASSEMBLED

    def test_chain_failure_after_proof_changes_nothing_stored(self) -> None:
        chain = FakeChain(fail_send=True)
        saga, store, _, pair = _setup(chain=chain)
        before = store.all()
        with pytest.raises(ExternalFailure) as exc_info:
            asyncio.run(saga.run(_request(pair)))
        assert exc_info.value.stage == "chain.send"
        assert store.all() == before
        assert saga.joins[0].failed_at == JoinStatus.SUBMITTED

    def test_send_is_never_retried(self) -> None:
        chain = FakeChain(fail_send=True)
        store = LocalCommitmentStore()
        first = store.put(_commitment(30, salt=101))
        second = store.put(_commitment(20, salt=102))
        saga = JoinCommitmentsSaga(
            store=store,
            trees=NullifierTreeManager(depth=DEPTH),
            prover=FakeProver(),
            chain=chain,
            builder=_builder(),
            chain_policy=CallPolicy(max_attempts=3),
        )
        with pytest.raises(ExternalFailure):
            asyncio.run(saga.run(_request((first, second))))
        assert chain.sent == 1

    def test_missing_event_is_a_failure(self) -> None:
        saga, store, _, pair = _setup(chain=FakeChain(events=False))
        with pytest.raises(ExternalFailure, match="no events"):
            asyncio.run(saga.run(_request(pair)))
        assert not any(c.is_nullified for c in store.all())

    def test_failed_join_leaves_temporary_tree_diverged(self) -> None:
        saga, _, trees, pair = _setup(prover=FakeProver(fail=True))
        with pytest.raises(ExternalFailure):
            asyncio.run(saga.run(_request(pair)))
        assert trees.has_staged_changes is True


class TestJoinValidation:
    def test_already_nullified_input_rejected_before_staging(self) -> None:
        saga, store, trees, pair = _setup()
        store.mark_nullified(pair[0].hash)
        with pytest.raises(AlreadyNullified):
            asyncio.run(saga.run(_request(pair)))
        assert trees.has_staged_changes is False
        assert saga.joins[0].failed_at == JoinStatus.PENDING

    def test_revealed_nullifier_rejected(self) -> None:
        saga, _, trees, pair = _setup()
        trees.rebuild([field_hash([_state_var_id(), SECRET_KEY, 101])])
        with pytest.raises(AlreadyNullified, match="already revealed"):
            asyncio.run(saga.run(_request(pair)))

    def test_same_commitment_twice_rejected(self) -> None:
        saga, _, _, pair = _setup()
        with pytest.raises(ValueError, match="with itself"):
            asyncio.run(saga.run(_request((pair[0], pair[0]))))

    def test_wrong_state_variable_rejected(self) -> None:
        saga, _, _, pair = _setup()
        with pytest.raises(ValueError, match="belongs to state"):
            asyncio.run(saga.run(_request(pair, mapping=False)))

    def test_struct_commitments_rejected(self) -> None:
        saga, _, _, pair = _setup()
        struct = Commitment(
            hash=1,
            name="balances",
            preimage=Preimage(_state_var_id(), {"a": 1, "b": 2}, 5, PUBLIC_KEY),
        )
        with pytest.raises(ValueError, match="struct"):
            asyncio.run(saga.run(_request((struct, pair[1]))))


class TestJoinTransitions:
    def test_cannot_skip_steps(self) -> None:
        _, _, _, pair = _setup()
        state = JoinState(join_id="j", request=_request(pair))
        with pytest.raises(TransitionError, match="Invalid join transition"):
            state.transition_to(JoinStatus.PROOF_GENERATED)

    def test_terminal_states(self) -> None:
        _, _, _, pair = _setup()
        state = JoinState(join_id="j", request=_request(pair))
        state.transition_to(JoinStatus.FAILED)
        with pytest.raises(TransitionError):
            state.transition_to(JoinStatus.NULLIFIERS_DERIVED)


class TestJoinRecovery:
    def test_events_logged_around_post_commit(self) -> None:
        log = JoinEventLog()
        saga, _, _, pair = _setup(event_log=log)
        result = asyncio.run(saga.run(_request(pair)))
        kinds = [e.event_kind for e in log.events()]
        assert kinds == [JoinEventKind.JOIN_CONFIRMED, JoinEventKind.POST_COMMIT_APPLIED]
        assert log.is_applied(result.join_id)
        assert log.pending() == []

    def test_replay_after_crash_before_post_commit(self) -> None:
        log = JoinEventLog()
        saga, store, _, pair = _setup(event_log=log)

        def crash(join_id: str, payload: Any) -> Commitment:
            raise RuntimeError("process died")

        saga._apply_post_commit = crash  # type: ignore[method-assign]
        with pytest.raises(RuntimeError):
            asyncio.run(saga.run(_request(pair)))
        assert not any(c.is_nullified for c in store.all())
        assert len(log.pending()) == 1

        del saga._apply_post_commit
        record = log.pending()[0]
        new_commitment = saga.replay_post_commit(record)
        assert new_commitment.preimage.value == 50
        assert all(store.get(c.hash).is_nullified for c in pair)
        assert log.pending() == []

    def test_replay_is_idempotent(self) -> None:
        log = JoinEventLog()
        saga, store, _, pair = _setup(event_log=log)
        asyncio.run(saga.run(_request(pair)))
        count = store.count
        record = log.events(JoinEventKind.JOIN_CONFIRMED)[0]
        saga.replay_post_commit(record)
        saga.replay_post_commit(record)
        assert store.count == count
        assert log.count == 2

    def test_replay_rejects_applied_event(self) -> None:
        log = JoinEventLog()
        saga, _, _, pair = _setup(event_log=log)
        asyncio.run(saga.run(_request(pair)))
        with pytest.raises(ValueError, match="Cannot replay"):
            saga.replay_post_commit(log.events(JoinEventKind.POST_COMMIT_APPLIED)[0])
