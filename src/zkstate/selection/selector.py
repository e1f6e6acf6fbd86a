"""Commitment selector — picks the two input commitments for a spend.

The spend and join circuits take exactly two input commitments, so a
selection is always a pair even when one commitment alone would cover the
value. Only commitments owned by the spender and not yet nullified count.

Scalar rule, after sorting candidates by value descending:
    top two cover the target        -> DIRECT_PAIR_SUFFICIENT
    only the total covers it        -> JOIN_REQUIRED (join the top two first)
    otherwise / fewer than two      -> INSUFFICIENT

The selector is a pure computation layer: no store access, no side effects.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Sequence, Union

from zkstate.crypto.field import to_int
from zkstate.errors import InsufficientFunds
from zkstate.models.commitment import Commitment, Selection, SelectionOutcome

logger = logging.getLogger(__name__)

Target = Union[int, Sequence[int], Mapping[str, int]]


def _field_targets(target: Target) -> list[int]:
    if isinstance(target, Mapping):
        return [to_int(v) for v in target.values()]
    if isinstance(target, (list, tuple)):
        return [to_int(v) for v in target]
    raise TypeError("Struct selection needs one target per field")


class GreedyStructSelector:
    """Best-effort greedy selection for multi-field (struct) commitments.

    For each field in order the pool is sorted by that field. The first
    field fixes the pair as the pool's top two; every later field checks the
    same pair. When the pair falls short on a field, the two commitments
    leading the pool for that field are discarded and the search restarts.
    Discarded commitments are never reconsidered, so a pair that exists may
    be missed. Callers depend only on `select`, so an exact search can
    replace this class without touching them.
    """

    def select(
        self,
        target: Target,
        candidates: Sequence[Commitment],
    ) -> Optional[tuple[Commitment, Commitment]]:
        targets = _field_targets(target)
        pool = list(candidates)

        while len(pool) >= 2:
            chosen: Optional[tuple[Commitment, Commitment]] = None
            satisfied = True
            for index, field_target in enumerate(targets):
                pool.sort(key=lambda c: c.preimage.field_values()[index], reverse=True)
                pair = chosen or (pool[0], pool[1])
                total = (
                    pair[0].preimage.field_values()[index]
                    + pair[1].preimage.field_values()[index]
                )
                if total < field_target:
                    satisfied = False
                    break
                chosen = pair
            if satisfied and chosen is not None:
                return chosen
            del pool[:2]

        logger.warning("Not enough commitments exist to cover the struct value")
        return None


class CommitmentSelector:
    """Selects a pair of unspent commitments covering a target value.

    Usage:
        selector = CommitmentSelector()
        selection = selector.select_inputs(public_key, 50, store.find_by_state_name("balances"))
        if selection.outcome == SelectionOutcome.JOIN_REQUIRED:
            # join selection.first and selection.second, then select again
    """

    def __init__(self, struct_selector: Optional[GreedyStructSelector] = None) -> None:
        self._struct_selector = struct_selector or GreedyStructSelector()

    @staticmethod
    def spendable(public_key: object, candidates: Iterable[Commitment]) -> list[Commitment]:
        """Candidates owned by `public_key` and not yet nullified."""
        owner = to_int(public_key)
        return [
            c for c in candidates
            if c.preimage.public_key == owner and not c.is_nullified
        ]

    def select_inputs(
        self,
        public_key: object,
        target_value: Target,
        candidates: Iterable[Commitment],
        is_struct: bool = False,
    ) -> Selection:
        """Pick the two input commitments for a spend of `target_value`."""
        possible = self.spendable(public_key, candidates)
        if len(possible) < 2:
            logger.warning(
                "Only %d spendable commitment(s); selection needs two", len(possible)
            )
            return Selection(SelectionOutcome.INSUFFICIENT)

        if is_struct:
            pair = self._struct_selector.select(target_value, possible)
            if pair is None:
                return Selection(SelectionOutcome.INSUFFICIENT)
            return Selection(SelectionOutcome.DIRECT_PAIR_SUFFICIENT, pair[0], pair[1])

        target = to_int(target_value)
        possible.sort(key=lambda c: c.preimage.scalar_value(), reverse=True)
        first, second = possible[0], possible[1]
        top_two = first.preimage.scalar_value() + second.preimage.scalar_value()
        total = sum(c.preimage.scalar_value() for c in possible)

        if top_two >= target:
            return Selection(SelectionOutcome.DIRECT_PAIR_SUFFICIENT, first, second)
        if total >= target:
            logger.warning(
                "Existing commitments are not appropriate; the two largest "
                "must be joined before spending %d", target,
            )
            return Selection(SelectionOutcome.JOIN_REQUIRED, first, second)
        return Selection(SelectionOutcome.INSUFFICIENT)

    def select_or_raise(
        self,
        public_key: object,
        target_value: Target,
        candidates: Iterable[Commitment],
        is_struct: bool = False,
    ) -> Selection:
        """Like select_inputs, but raise InsufficientFunds instead of INSUFFICIENT."""
        selection = self.select_inputs(public_key, target_value, candidates, is_struct)
        if not selection.found:
            raise InsufficientFunds(f"No commitment pair covers {target_value!r}")
        return selection
