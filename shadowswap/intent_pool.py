"""
SHADOWSWAP Source Ledger (Intent Pool)

Escrows deposits, records intents and their commitments, and releases the
escrow exactly once: to the solver on a proven fill, or back to the
depositor on refund or cancellation.

Intent lifecycle:

    absent ──create_intent──▶ created ──settle_intent──▶ settled
                                 │
                                 ├──refund (relayer, now >= deadline)─────────┐
                                 ├──cancel_intent (refund_to, any time)───────┼─▶ refunded
                                 └──user_claim_refund (refund_to, buffer)─────┘

`filled` and `refunded` are terminal and mutually exclusive. Pause only
blocks create_intent; settlement and every refund path stay available so
escrowed funds are always recoverable.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from shadowswap import merkle
from shadowswap.events import IntentCancelled, IntentCreated, IntentRefunded, IntentSettled
from shadowswap.hardening import (
    AuthorizationFailure,
    ErrorCode,
    InvariantChecker,
    StateConflict,
    ValidationFailure,
    Validators,
)
from shadowswap.ledger import (
    LedgerState,
    LedgerStore,
    add_member,
    atomic,
    compute_fee,
    emit,
    on_rollback,
    pay_from_escrow,
    pull_into_escrow,
    put_entry,
    require_not_paused,
    require_relayer,
    set_field,
    sync_remote_root,
)
from shadowswap.merkle import MerkleAccumulator
from shadowswap.observability import Component, get_logger, timed_operation

_log = get_logger("intent_pool", Component.SOURCE)


class IntentStatus(Enum):
    ABSENT = "absent"
    CREATED = "created"
    SETTLED = "settled"
    REFUNDED = "refunded"


@dataclass
class Intent:
    intent_id: str
    commitment: str
    source_token: str
    source_amount: int
    dest_token: str
    dest_amount: int
    dest_chain: int
    deadline: int
    refund_to: str
    created_at: int
    filled: bool = False
    refunded: bool = False

    @property
    def processed(self) -> bool:
        return self.filled or self.refunded

    @property
    def status(self) -> IntentStatus:
        if self.filled:
            return IntentStatus.SETTLED
        if self.refunded:
            return IntentStatus.REFUNDED
        return IntentStatus.CREATED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class SourceStore(LedgerStore):
    intents: Dict[str, Intent] = field(default_factory=dict)
    commitments: Set[str] = field(default_factory=set)
    commitment_tree: MerkleAccumulator = field(default_factory=MerkleAccumulator)
    solvers: Dict[str, str] = field(default_factory=dict)


class SourceLedger(LedgerState):
    """Source-side ledger state. Operate on it with this module's functions."""

    component = Component.SOURCE
    label = "intent_pool"
    store_class = SourceStore

    store: SourceStore


def _get_intent(state: SourceLedger, intent_id: str) -> Intent:
    intent_id = Validators.bytes32(intent_id, "intent_id")
    intent = state.store.intents.get(intent_id)
    if intent is None:
        raise StateConflict(ErrorCode.INTENT_NOT_FOUND, "intent not found", intent_id=intent_id)
    return intent


def _require_unprocessed(intent: Intent) -> None:
    if intent.processed:
        raise StateConflict(
            ErrorCode.ALREADY_PROCESSED,
            f"intent already {intent.status.value}",
            intent_id=intent.intent_id,
        )


def _require_refund_recipient(intent: Intent, caller: str) -> str:
    caller = Validators.address(caller, "caller")
    if caller != intent.refund_to:
        raise AuthorizationFailure(ErrorCode.NOT_REFUND_RECIPIENT, "caller is not the refund recipient", caller=caller)
    return caller


def _resolve_deadline(state: SourceLedger, deadline: Optional[int]) -> int:
    now = state.now()
    if deadline is None:
        return now + state.params.default_intent_timeout
    if isinstance(deadline, bool) or not isinstance(deadline, int):
        raise ValidationFailure(ErrorCode.INVALID_DEADLINE, "deadline must be an int timestamp")
    latest = now + state.params.max_intent_timeout
    if deadline <= now or deadline > latest:
        raise ValidationFailure(
            ErrorCode.INVALID_DEADLINE,
            f"deadline must be within ({now}, {latest}]",
            deadline=deadline,
        )
    return deadline


# =============================================================================
# TRANSITIONS
# =============================================================================

@timed_operation(_log, "create_intent")
def create_intent(
    state: SourceLedger,
    caller: str,
    intent_id: str,
    commitment: str,
    source_token: str,
    source_amount: int,
    dest_token: str,
    dest_amount: int,
    dest_chain: int,
    refund_to: str,
    deadline: Optional[int] = None,
) -> Intent:
    """Escrow `source_amount` from `caller` and record a new intent.

    `deadline=None` selects the default window. The commitment is appended
    to the commitment tree; its index is reported in IntentCreated.
    """
    with atomic(state):
        require_not_paused(state)
        caller = Validators.address(caller, "caller")
        intent_id = Validators.bytes32(intent_id, "intent_id")
        commitment = Validators.bytes32(commitment, "commitment")
        source_token = state.store.registry.check_amount(source_token, source_amount)
        dest_token = Validators.address(dest_token, "dest_token", code=ErrorCode.INVALID_TOKEN)
        Validators.amount(dest_amount, "dest_amount")
        dest_chain = Validators.chain_id(dest_chain, "dest_chain")
        if dest_chain == state.chain_id:
            raise ValidationFailure(ErrorCode.INVALID_CHAIN, "dest_chain must differ from the source chain")
        refund_to = Validators.address(refund_to, "refund_to")

        if commitment in state.store.commitments:
            raise StateConflict(ErrorCode.COMMITMENT_USED, "commitment already used", commitment=commitment)
        if intent_id in state.store.intents:
            raise StateConflict(ErrorCode.INTENT_EXISTS, "intent id already used", intent_id=intent_id)

        deadline = _resolve_deadline(state, deadline)

        pull_into_escrow(state, source_token, caller, source_amount)
        tree = state.store.commitment_tree
        index = tree.append(commitment)
        on_rollback(state, lambda: tree.truncate(index))
        add_member(state, state.store.commitments, commitment)

        intent = Intent(
            intent_id=intent_id,
            commitment=commitment,
            source_token=source_token,
            source_amount=source_amount,
            dest_token=dest_token,
            dest_amount=dest_amount,
            dest_chain=dest_chain,
            deadline=deadline,
            refund_to=refund_to,
            created_at=state.now(),
        )
        put_entry(state, state.store.intents, intent_id, intent)

        emit(state, IntentCreated(
            intent_id=intent_id,
            commitment=commitment,
            commitment_index=index,
            source_token=source_token,
            source_amount=source_amount,
            dest_token=dest_token,
            dest_amount=dest_amount,
            dest_chain=dest_chain,
            deadline=deadline,
            refund_to=refund_to,
        ))

    state.log.info("intent created", operation="create_intent", intent_id=intent_id, deadline=deadline)
    return Intent(**asdict(intent))


@timed_operation(_log, "settle_intent")
def settle_intent(
    state: SourceLedger,
    caller: str,
    intent_id: str,
    solver: str,
    proof: Sequence[str],
) -> int:
    """Release escrow to `solver` once the fill of `intent_id` is proven.

    The proof is checked against the destination root synced for the
    intent's dest_chain. Returns the amount paid to the solver.
    """
    with atomic(state):
        require_relayer(state, caller)
        intent = _get_intent(state, intent_id)
        _require_unprocessed(intent)
        solver = Validators.address(solver, "solver")

        root = state.store.roots.require(intent.dest_chain)
        if not merkle.verify(intent.intent_id, root, proof):
            raise AuthorizationFailure(ErrorCode.INVALID_PROOF, "fill proof does not verify", intent_id=intent.intent_id)

        set_field(state, intent, "filled", True)
        InvariantChecker.check_exclusive_flags(intent.intent_id, intent.filled, intent.refunded)
        put_entry(state, state.store.solvers, intent.intent_id, solver)

        fee = compute_fee(intent.source_amount, state.store.fee_bps)
        payout = intent.source_amount - fee
        pay_from_escrow(state, intent.source_token, solver, payout)
        pay_from_escrow(state, intent.source_token, state.store.fee_collector, fee)

        emit(state, IntentSettled(
            intent_id=intent.intent_id,
            solver=solver,
            token=intent.source_token,
            amount=payout,
            fee=fee,
        ))

    state.log.info("intent settled", operation="settle_intent", intent_id=intent.intent_id, solver=solver)
    return payout


def _refund_to_depositor(state: SourceLedger, intent: Intent) -> None:
    set_field(state, intent, "refunded", True)
    InvariantChecker.check_exclusive_flags(intent.intent_id, intent.filled, intent.refunded)
    pay_from_escrow(state, intent.source_token, intent.refund_to, intent.source_amount)


@timed_operation(_log, "refund")
def refund(state: SourceLedger, caller: str, intent_id: str) -> int:
    """Relayer refund once the deadline has passed."""
    with atomic(state):
        require_relayer(state, caller)
        intent = _get_intent(state, intent_id)
        _require_unprocessed(intent)
        if state.now() < intent.deadline:
            raise StateConflict(ErrorCode.DEADLINE_NOT_REACHED, f"deadline {intent.deadline} not reached")

        _refund_to_depositor(state, intent)
        emit(state, IntentRefunded(
            intent_id=intent.intent_id,
            refund_to=intent.refund_to,
            token=intent.source_token,
            amount=intent.source_amount,
            path="relayer",
        ))

    state.log.info("intent refunded", operation="refund", intent_id=intent.intent_id)
    return intent.source_amount


@timed_operation(_log, "cancel_intent")
def cancel_intent(state: SourceLedger, caller: str, intent_id: str) -> int:
    """Depositor cancellation, allowed any time before settlement."""
    with atomic(state):
        intent = _get_intent(state, intent_id)
        _require_refund_recipient(intent, caller)
        _require_unprocessed(intent)

        _refund_to_depositor(state, intent)
        emit(state, IntentCancelled(
            intent_id=intent.intent_id,
            refund_to=intent.refund_to,
            token=intent.source_token,
            amount=intent.source_amount,
        ))

    state.log.info("intent cancelled", operation="cancel_intent", intent_id=intent.intent_id)
    return intent.source_amount


@timed_operation(_log, "user_claim_refund")
def user_claim_refund(state: SourceLedger, caller: str, intent_id: str) -> int:
    """Depositor self-refund after deadline + manual refund buffer."""
    with atomic(state):
        intent = _get_intent(state, intent_id)
        _require_refund_recipient(intent, caller)
        _require_unprocessed(intent)
        available_at = intent.deadline + state.params.manual_refund_buffer
        if state.now() < available_at:
            raise StateConflict(ErrorCode.REFUND_BUFFER_ACTIVE, f"self-refund available at {available_at}")

        _refund_to_depositor(state, intent)
        emit(state, IntentRefunded(
            intent_id=intent.intent_id,
            refund_to=intent.refund_to,
            token=intent.source_token,
            amount=intent.source_amount,
            path="user",
        ))

    state.log.info("intent refunded by depositor", operation="user_claim_refund", intent_id=intent.intent_id)
    return intent.source_amount


def sync_dest_root(state: SourceLedger, caller: str, chain_id: int, root: str) -> None:
    """Store the latest fill root of destination chain `chain_id`."""
    sync_remote_root(state, caller, chain_id, root, kind="dest")


# =============================================================================
# READ VIEWS
# =============================================================================

def get_intent(state: SourceLedger, intent_id: str) -> Optional[Intent]:
    """Copy of the stored intent, or None."""
    with state._lock:
        intent = state.store.intents.get(intent_id.strip().lower())
        return Intent(**asdict(intent)) if intent else None


def intent_status(state: SourceLedger, intent_id: str) -> IntentStatus:
    with state._lock:
        intent = state.store.intents.get(intent_id.strip().lower())
        return intent.status if intent else IntentStatus.ABSENT


def get_solver(state: SourceLedger, intent_id: str) -> Optional[str]:
    with state._lock:
        return state.store.solvers.get(intent_id.strip().lower())


def list_intents(state: SourceLedger) -> List[Intent]:
    with state._lock:
        return [Intent(**asdict(i)) for i in state.store.intents.values()]


def commitment_root(state: SourceLedger) -> str:
    with state._lock:
        return state.store.commitment_tree.root


def commitment_tree_size(state: SourceLedger) -> int:
    with state._lock:
        return state.store.commitment_tree.size


def commitment_proof(state: SourceLedger, commitment: str) -> List[str]:
    """Proof of `commitment` against the current commitment root."""
    with state._lock:
        return state.store.commitment_tree.proof_for(commitment)


def is_commitment_used(state: SourceLedger, commitment: str) -> bool:
    with state._lock:
        return commitment.strip().lower() in state.store.commitments


def dest_root(state: SourceLedger, chain_id: int) -> Optional[str]:
    with state._lock:
        return state.store.roots.get(chain_id)
