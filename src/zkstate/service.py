"""zkstate service — unified facade over store, trees, selector, and saga.

This is the primary interface for programmatic access. It wires together:
- Commitment records (CommitmentStore)
- The nullifier tree pair (NullifierTreeManager)
- Input selection (CommitmentSelector)
- Joins (JoinCommitmentsSaga), with the join event log for recovery

Queries and tree maintenance return ServiceResult; selection failures are
reported in the result, never raised. Joins raise, since a failed join
must be handled by the caller (retry, reconcile, or give up).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from zkstate import __version__
from zkstate.config import ZappConfig
from zkstate.crypto.commitment_builder import CommitmentBuilder
from zkstate.crypto.field import to_hex32, to_int
from zkstate.crypto.nullifier_tree import NullifierTreeManager
from zkstate.errors import ZappError
from zkstate.external.chain import ChainClient
from zkstate.external.prover import Prover
from zkstate.models.commitment import Commitment, Selection, SelectionOutcome
from zkstate.persistence.commitment_store import LocalCommitmentStore
from zkstate.persistence.event_log import JoinEventLog
from zkstate.selection.selector import CommitmentSelector
from zkstate.workflow.join_saga import JoinCommitmentsSaga, JoinRequest, JoinResult, JoinStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class ZappService:
    """Commitment wallet facade.

    Usage:
        service = ZappService.from_config(ZappConfig.from_env())
        service.rebuild_tree()
        selection = await service.prepare_inputs(
            state_name="balances", state_var_id=[base_id, owner],
            secret_key=sk, public_key=pk, target_value=45,
        )
        first, second = selection.pair

    A join is only possible when a prover and a chain client are given.
    After a confirmed join its nullifiers are committed unless
    auto_promote is False, in which case the caller promotes. A failed
    join drops its staged nullifiers before the error propagates.
    """

    def __init__(
        self,
        store: LocalCommitmentStore,
        trees: Optional[NullifierTreeManager] = None,
        prover: Optional[Prover] = None,
        chain: Optional[ChainClient] = None,
        builder: Optional[CommitmentBuilder] = None,
        selector: Optional[CommitmentSelector] = None,
        event_log: Optional[JoinEventLog] = None,
        config: Optional[ZappConfig] = None,
        auto_promote: bool = True,
    ) -> None:
        self._config = config or ZappConfig()
        self._store = store
        self._builder = builder or CommitmentBuilder()
        self._trees = trees or NullifierTreeManager(
            depth=self._config.tree.depth,
            hasher=self._builder.hasher,
            field_bits=self._config.tree.field_bits,
        )
        self._selector = selector or CommitmentSelector()
        self._event_log = event_log or JoinEventLog()
        self._auto_promote = auto_promote
        self._saga: Optional[JoinCommitmentsSaga] = None
        if prover is not None and chain is not None:
            self._saga = JoinCommitmentsSaga(
                store=store,
                trees=self._trees,
                prover=prover,
                chain=chain,
                builder=self._builder,
                prover_policy=self._config.prover.policy(),
                chain_policy=self._config.chain.policy(),
                event_log=self._event_log,
            )

    @classmethod
    def from_config(
        cls,
        config: ZappConfig,
        prover: Optional[Prover] = None,
        chain: Optional[ChainClient] = None,
    ) -> ZappService:
        """Build a service from configuration.

        Without explicit collaborators, an HTTP prover is created and a web3
        chain client is created when the chain section is complete.
        """
        from zkstate.external.chain import Web3ChainClient, load_abi
        from zkstate.external.prover import HttpProver

        builder = CommitmentBuilder()
        store = LocalCommitmentStore(storage_path=config.store.path, builder=builder)
        event_log = JoinEventLog(storage_path=config.store.event_log_path)
        if prover is None:
            prover = HttpProver(config.prover.url, timeout=config.prover.timeout_s or 600.0)
        if chain is None and config.chain.is_configured:
            chain = Web3ChainClient(
                rpc_url=config.chain.rpc_url,
                private_key=config.chain.private_key,
                contract_address=config.chain.contract_address,
                abi=load_abi(config.chain.abi_path),
                default_account=config.chain.default_account,
                chain_id=config.chain.chain_id,
                default_gas=config.chain.default_gas,
                gas_price_gwei=config.chain.default_gas_price_gwei,
                receipt_timeout=config.chain.receipt_timeout_s,
            )
        return cls(
            store=store,
            prover=prover,
            chain=chain,
            builder=builder,
            event_log=event_log,
            config=config,
        )

    @property
    def store(self) -> LocalCommitmentStore:
        return self._store

    @property
    def trees(self) -> NullifierTreeManager:
        return self._trees

    @property
    def builder(self) -> CommitmentBuilder:
        return self._builder

    @property
    def selector(self) -> CommitmentSelector:
        return self._selector

    @property
    def event_log(self) -> JoinEventLog:
        return self._event_log

    @property
    def saga(self) -> Optional[JoinCommitmentsSaga]:
        return self._saga

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def candidates(self, state_name: str, mapping_key: Optional[object] = None) -> list[Commitment]:
        return self._store.find_by_state_name(state_name, mapping_key)

    def plan_spend(
        self,
        state_name: str,
        public_key: object,
        target_value: Any,
        mapping_key: Optional[object] = None,
        is_struct: bool = False,
    ) -> ServiceResult:
        """Select inputs for a spend without joining anything."""
        try:
            selection = self._selector.select_inputs(
                public_key,
                target_value,
                self.candidates(state_name, mapping_key),
                is_struct=is_struct,
            )
        except (ValueError, TypeError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        if not selection.found:
            return ServiceResult(
                success=False,
                errors=[f"Insufficient commitments in {state_name} for {target_value!r}"],
                data={"outcome": selection.outcome.value},
            )
        first, second = selection.pair
        return ServiceResult(
            success=True,
            data={
                "outcome": selection.outcome.value,
                "commitments": [first.hex_id, second.hex_id],
            },
        )

    async def prepare_inputs(
        self,
        state_name: str,
        state_var_id: Sequence[int],
        secret_key: object,
        public_key: object,
        target_value: int,
    ) -> Selection:
        """Select two inputs covering a scalar spend, joining as often as needed.

        Returns the final selection; INSUFFICIENT means the owner's total
        does not cover `target_value`.
        """
        mapping_key = state_var_id[1] if len(state_var_id) > 1 else None
        selection = self._selector.select_inputs(
            public_key, target_value, self.candidates(state_name, mapping_key),
        )
        while selection.outcome == SelectionOutcome.JOIN_REQUIRED:
            await self.join(JoinRequest(
                state_name=state_name,
                state_var_id=list(state_var_id),
                secret_key=to_int(secret_key),
                public_key=to_int(public_key),
                commitments=selection.pair,
            ))
            selection = self._selector.select_inputs(
                public_key, target_value, self.candidates(state_name, mapping_key),
            )
        return selection

    # ------------------------------------------------------------------
    # Joins
    # ------------------------------------------------------------------

    async def join(self, request: JoinRequest) -> JoinResult:
        """Run one join. Raises ZappError if no prover/chain is configured."""
        if self._saga is None:
            raise ZappError("Joining commitments needs a prover and a chain client")
        try:
            result = await self._saga.run(request)
        except Exception:
            self._trees.restage(self._live_nullifiers())
            raise
        if self._auto_promote:
            self._trees.commit_nullifiers(result.nullifiers)
        return result

    def _live_nullifiers(self) -> list[int]:
        """Nullifiers of joins that have not failed short of confirmation."""
        live: list[int] = []
        for state in self._saga.joins:
            if state.status == JoinStatus.FAILED and state.failed_at != JoinStatus.CONFIRMED:
                continue
            live.extend(state.nullifiers)
        return live

    def recover(self) -> ServiceResult:
        """Replay post-commit updates of confirmed joins never applied."""
        if self._saga is None:
            return ServiceResult(success=False, errors=["No join saga configured"])
        replayed: list[str] = []
        errors: list[str] = []
        for record in self._event_log.pending():
            try:
                self._saga.replay_post_commit(record)
            except (ZappError, ValueError) as e:
                errors.append(f"{record.join_id}: {e}")
                continue
            replayed.append(record.join_id)
        if replayed:
            self.rebuild_tree()
        return ServiceResult(success=not errors, errors=errors, data={"replayed": replayed})

    # ------------------------------------------------------------------
    # Tree maintenance
    # ------------------------------------------------------------------

    def promote(self) -> ServiceResult:
        root = self._trees.promote()
        return ServiceResult(success=True, data={"committed_root": to_hex32(root)})

    def reconcile(self) -> ServiceResult:
        """Drop staged nullifiers left behind by joins that never confirmed."""
        had_changes = self._trees.has_staged_changes
        if had_changes:
            self._trees.discard_staged()
        return ServiceResult(
            success=True,
            data={
                "discarded": had_changes,
                "committed_root": to_hex32(self._trees.committed_root),
            },
        )

    def rebuild_tree(self, nullifiers: Optional[Iterable[object]] = None) -> ServiceResult:
        """Rebuild both trees from revealed nullifiers (default: the store's)."""
        if nullifiers is None:
            nullifiers = self._store.revealed_nullifiers()
        values = [to_int(n) for n in nullifiers]
        root = self._trees.rebuild(values)
        return ServiceResult(
            success=True,
            data={"committed_root": to_hex32(root), "nullifiers": len(values)},
        )

    def witness(self, nullifier: object) -> ServiceResult:
        try:
            witness = self._trees.membership_witness(nullifier)
        except (ValueError, TypeError) as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(
            success=True,
            data={
                "is_member": witness.is_member,
                "root": to_hex32(witness.root),
                "index": witness.index,
                "path": [to_hex32(h) for h in witness.path],
            },
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return a summary of records, trees, and joins."""
        commitments = self._store.all()
        return {
            "version": __version__,
            "commitments": {
                "total": len(commitments),
                "unspent": sum(1 for c in commitments if not c.is_nullified),
                "nullified": sum(1 for c in commitments if c.is_nullified),
            },
            "tree": {
                "depth": self._trees.committed.depth,
                "committed_root": to_hex32(self._trees.committed_root),
                "staged_root": to_hex32(self._trees.staged_root),
                "has_staged_changes": self._trees.has_staged_changes,
            },
            "joins": {
                "logged_events": self._event_log.count,
                "pending_recovery": len(self._event_log.pending()),
                "can_join": self._saga is not None,
            },
        }
