"""
SHADOWSWAP Destination Ledger (Settlement)

Registers intents proven against the synced source commitment root,
accepts the first matching solver fill, and pays the fill out to the
recipient who reveals the commitment secret.

Per-intent lifecycle:

    unregistered ──register_intent──▶ registered ──fill_intent──▶ filled ──claim_withdrawal──▶ claimed
                    (relayer, proof)               (any solver)             (relayer, secret + signature)

fill_intent is the only write that grows the fill tree, so fill-tree order
is the canonical fill order. Pause blocks registration and fills; claims
stay available so filled payouts can always leave escrow.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from shadowswap import merkle
from shadowswap.claims import ClaimAuthorization, verify_claim
from shadowswap.events import IntentFilled, IntentRegistered, WithdrawalClaimed
from shadowswap.field import compute_commitment
from shadowswap.hardening import (
    AuthorizationFailure,
    CryptoUtils,
    ErrorCode,
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

_log = get_logger("settlement", Component.DESTINATION)


class FillStatus(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    FILLED = "filled"
    CLAIMED = "claimed"


@dataclass(frozen=True)
class IntentParams:
    commitment: str
    token: str
    amount: int
    source_chain: int
    deadline: int
    exists: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Fill:
    solver: str
    token: str
    amount: int
    source_chain: int
    timestamp: int
    claimed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DestinationStore(LedgerStore):
    params: Dict[str, IntentParams] = field(default_factory=dict)
    fills: Dict[str, Fill] = field(default_factory=dict)
    nullifiers: Set[str] = field(default_factory=set)
    fill_tree: MerkleAccumulator = field(default_factory=MerkleAccumulator)


class DestinationLedger(LedgerState):
    """Destination-side ledger state. Operate on it with this module's functions."""

    component = Component.DESTINATION
    label = "settlement"
    store_class = DestinationStore

    store: DestinationStore


def _matches(params: IntentParams, token: str, amount: int, source_chain: int) -> bool:
    return params.token == token and params.amount == amount and params.source_chain == source_chain


# =============================================================================
# TRANSITIONS
# =============================================================================

@timed_operation(_log, "register_intent")
def register_intent(
    state: DestinationLedger,
    caller: str,
    intent_id: str,
    commitment: str,
    token: str,
    amount: int,
    source_chain: int,
    deadline: int,
    proof: Sequence[str],
) -> IntentParams:
    """Record an intent whose commitment is proven against the synced source root."""
    with atomic(state):
        require_relayer(state, caller)
        require_not_paused(state)
        intent_id = Validators.bytes32(intent_id, "intent_id")
        commitment = Validators.bytes32(commitment, "commitment")
        if intent_id in state.store.params:
            raise StateConflict(ErrorCode.ALREADY_REGISTERED, "intent already registered", intent_id=intent_id)

        token = state.store.registry.check_amount(token, amount)
        source_chain = Validators.chain_id(source_chain, "source_chain")
        if source_chain == state.chain_id:
            raise ValidationFailure(ErrorCode.INVALID_CHAIN, "source_chain must differ from the destination chain")
        if isinstance(deadline, bool) or not isinstance(deadline, int):
            raise ValidationFailure(ErrorCode.INVALID_DEADLINE, "deadline must be an int timestamp")
        if deadline <= state.now():
            raise StateConflict(ErrorCode.INTENT_EXPIRED, "intent deadline has passed", intent_id=intent_id)

        root = state.store.roots.require(source_chain)
        if not merkle.verify(commitment, root, proof):
            raise AuthorizationFailure(ErrorCode.INVALID_PROOF, "commitment proof does not verify", intent_id=intent_id)

        params = IntentParams(
            commitment=commitment,
            token=token,
            amount=amount,
            source_chain=source_chain,
            deadline=deadline,
        )
        put_entry(state, state.store.params, intent_id, params)
        emit(state, IntentRegistered(
            intent_id=intent_id,
            commitment=commitment,
            token=token,
            amount=amount,
            source_chain=source_chain,
            deadline=deadline,
        ))

    state.log.info("intent registered", operation="register_intent", intent_id=intent_id)
    return params


@timed_operation(_log, "fill_intent")
def fill_intent(
    state: DestinationLedger,
    caller: str,
    intent_id: str,
    commitment: str,
    token: str,
    amount: int,
    source_chain: int,
) -> int:
    """Escrow the solver payout for a registered intent; first fill wins.

    Returns the fill-tree index of `intent_id`.
    """
    with atomic(state):
        require_not_paused(state)
        solver = Validators.address(caller, "caller")
        intent_id = Validators.bytes32(intent_id, "intent_id")
        if intent_id in state.store.fills:
            raise StateConflict(ErrorCode.ALREADY_FILLED, "intent already filled", intent_id=intent_id)

        params = state.store.params.get(intent_id)
        if params is None:
            raise StateConflict(ErrorCode.NOT_REGISTERED, "intent not registered", intent_id=intent_id)
        if state.now() > params.deadline:
            raise StateConflict(ErrorCode.INTENT_EXPIRED, "intent deadline has passed", intent_id=intent_id)

        commitment = Validators.bytes32(commitment, "commitment")
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        amount = Validators.amount(amount)
        source_chain = Validators.chain_id(source_chain, "source_chain")
        if commitment != params.commitment or not _matches(params, token, amount, source_chain):
            raise StateConflict(ErrorCode.PARAMS_MISMATCH, "fill does not match registered params", intent_id=intent_id)

        pull_into_escrow(state, token, solver, amount)
        tree = state.store.fill_tree
        index = tree.append(intent_id)
        on_rollback(state, lambda: tree.truncate(index))
        put_entry(state, state.store.fills, intent_id, Fill(
            solver=solver,
            token=token,
            amount=amount,
            source_chain=source_chain,
            timestamp=state.now(),
        ))
        emit(state, IntentFilled(
            intent_id=intent_id,
            solver=solver,
            token=token,
            amount=amount,
            source_chain=source_chain,
            fill_index=index,
        ))

    state.log.info("intent filled", operation="fill_intent", intent_id=intent_id, solver=solver, fill_index=index)
    return index


@timed_operation(_log, "claim_withdrawal")
def claim_withdrawal(
    state: DestinationLedger,
    caller: str,
    intent_id: str,
    nullifier: str,
    recipient: str,
    secret: str,
    authorization: ClaimAuthorization,
) -> int:
    """Pay a fill to `recipient` on reveal of the commitment secret.

    Returns the amount paid to the recipient (fill amount minus fee).
    """
    with atomic(state):
        require_relayer(state, caller)
        intent_id = Validators.bytes32(intent_id, "intent_id")
        fill = state.store.fills.get(intent_id)
        if fill is None:
            raise StateConflict(ErrorCode.NOT_FILLED, "intent not filled", intent_id=intent_id)
        if fill.claimed:
            raise StateConflict(ErrorCode.ALREADY_CLAIMED, "fill already claimed", intent_id=intent_id)

        nullifier = Validators.bytes32(nullifier, "nullifier")
        if nullifier in state.store.nullifiers:
            raise StateConflict(ErrorCode.NULLIFIER_USED, "nullifier already used", nullifier=nullifier)

        recipient = Validators.address(recipient, "recipient")
        verify_claim(authorization, state.chain_id, intent_id, nullifier, recipient)

        secret = Validators.bytes32(secret, "secret")
        params = state.store.params[intent_id]
        expected = compute_commitment(secret, nullifier, params.amount, params.source_chain)
        if not CryptoUtils.secure_compare_str(expected, params.commitment):
            raise AuthorizationFailure(ErrorCode.INVALID_COMMITMENT, "secret does not open the commitment", intent_id=intent_id)

        if not _matches(params, fill.token, fill.amount, fill.source_chain):
            raise StateConflict(ErrorCode.PARAMS_MISMATCH, "fill drifted from registered params", intent_id=intent_id)

        set_field(state, fill, "claimed", True)
        add_member(state, state.store.nullifiers, nullifier)

        fee = compute_fee(fill.amount, state.store.fee_bps)
        payout = fill.amount - fee
        pay_from_escrow(state, fill.token, recipient, payout)
        pay_from_escrow(state, fill.token, state.store.fee_collector, fee)

        emit(state, WithdrawalClaimed(
            intent_id=intent_id,
            nullifier=nullifier,
            recipient=recipient,
            token=fill.token,
            amount=payout,
            fee=fee,
        ))

    state.log.info("withdrawal claimed", operation="claim_withdrawal", intent_id=intent_id, recipient=recipient)
    return payout


def sync_source_root(state: DestinationLedger, caller: str, chain_id: int, root: str) -> None:
    """Store the latest commitment root of source chain `chain_id`."""
    sync_remote_root(state, caller, chain_id, root, kind="source")


# =============================================================================
# READ VIEWS
# =============================================================================

def get_intent_params(state: DestinationLedger, intent_id: str) -> Optional[IntentParams]:
    with state._lock:
        return state.store.params.get(intent_id.strip().lower())


def get_fill(state: DestinationLedger, intent_id: str) -> Optional[Fill]:
    with state._lock:
        fill = state.store.fills.get(intent_id.strip().lower())
        return Fill(**asdict(fill)) if fill else None


def intent_status(state: DestinationLedger, intent_id: str) -> FillStatus:
    key = intent_id.strip().lower()
    with state._lock:
        fill = state.store.fills.get(key)
        if fill is not None:
            return FillStatus.CLAIMED if fill.claimed else FillStatus.FILLED
        if key in state.store.params:
            return FillStatus.REGISTERED
        return FillStatus.UNREGISTERED


def is_registered(state: DestinationLedger, intent_id: str) -> bool:
    with state._lock:
        return intent_id.strip().lower() in state.store.params


def fill_root(state: DestinationLedger) -> str:
    with state._lock:
        return state.store.fill_tree.root


def fill_tree_size(state: DestinationLedger) -> int:
    with state._lock:
        return state.store.fill_tree.size


def fill_proof(state: DestinationLedger, intent_id: str) -> List[str]:
    """Proof of `intent_id` against the current fill root."""
    with state._lock:
        return state.store.fill_tree.proof_for(intent_id)


def is_nullifier_used(state: DestinationLedger, nullifier: str) -> bool:
    with state._lock:
        return nullifier.strip().lower() in state.store.nullifiers


def source_root(state: DestinationLedger, chain_id: int) -> Optional[str]:
    with state._lock:
        return state.store.roots.get(chain_id)
