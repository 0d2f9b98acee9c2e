"""
SHADOWSWAP Ledger Scaffolding

State shared by the Source Ledger (shadowswap.intent_pool) and the
Destination Ledger (shadowswap.settlement):

    Clock               SystemClock / ManualClock, integer Unix seconds
    Balances            per-token account balances owned by one ledger
    ChainRootRegistry   remote chain id -> latest synced root
    LedgerStore         everything persisted; rolled back by atomic()
    LedgerState         store + lock + event log + logger + audit trail

Operations are free functions taking the state object and an explicit
caller identity. Access control is a direct comparison against the stored
owner/relayer address.

Atomicity:
    Every public operation runs inside ``atomic(state)``. The ledger lock
    is held for the whole transition and events are buffered. Each store
    mutation records its inverse in an undo journal (put_entry, add_member,
    set_field, on_rollback), so the cost of a transition is independent of
    ledger history. On any exception the journal is replayed newest first
    and buffered events are dropped, so a failed transition has no
    observable effect. On success the events are appended to the log
    under the lock and subscribers are notified after it is released.
"""

from __future__ import annotations

import contextlib
import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, MutableMapping, Optional, Set

from shadowswap.config import DAY, HOUR, ShadowswapConfig, get_config
from shadowswap.events import (
    EmergencyWithdrawal,
    Event,
    EventLog,
    Paused,
    RoleUpdated,
    RootSynced,
    TokenAdded,
    TokenConfigUpdated,
    TokenRemoved,
    Unpaused,
)
from shadowswap.hardening import (
    AuthorizationFailure,
    CustodyFailure,
    ErrorCode,
    InvariantChecker,
    InvariantViolation,
    StateConflict,
    ValidationFailure,
    Validators,
)
from shadowswap.observability import AuditLogger, Component, ShadowswapLogger, get_correlation_id, get_logger
from shadowswap.registry import TokenConfig, TokenRegistry

TransferGuard = Callable[[str, str, str, int], bool]


# =============================================================================
# CLOCK
# =============================================================================

class Clock:
    """Source of ledger time in integer Unix seconds."""

    def now(self) -> int:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """Deterministic clock for tests and simulations."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("time cannot go backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            InvariantChecker.check_monotonic_increase("clock", self._now, timestamp)
            self._now = timestamp


# =============================================================================
# PROTOCOL PARAMETERS
# =============================================================================

@dataclass(frozen=True)
class ProtocolParams:
    """Timing and fee parameters fixed when a ledger is constructed."""
    default_intent_timeout: int = HOUR
    max_intent_timeout: int = 7 * DAY
    manual_refund_buffer: int = DAY
    emergency_delay: int = 7 * DAY
    fee_bps: int = 10

    def __post_init__(self):
        Validators.fee_bps(self.fee_bps)
        if self.default_intent_timeout <= 0 or self.max_intent_timeout < self.default_intent_timeout:
            raise ValidationFailure(
                ErrorCode.INVALID_DEADLINE,
                "require 0 < default_intent_timeout <= max_intent_timeout",
            )

    @classmethod
    def from_config(cls, config: Optional[ShadowswapConfig] = None) -> "ProtocolParams":
        protocol = (config or get_config()).protocol
        return cls(
            default_intent_timeout=protocol.default_intent_timeout.get(),
            max_intent_timeout=protocol.max_intent_timeout.get(),
            manual_refund_buffer=protocol.manual_refund_buffer.get(),
            emergency_delay=protocol.emergency_delay.get(),
            fee_bps=protocol.fee_bps.get(),
        )


def compute_fee(amount: int, fee_bps: int) -> int:
    """Protocol fee in base units, rounded down."""
    return amount * fee_bps // 10_000


# =============================================================================
# BALANCES
# =============================================================================

class Balances:
    """Token balances held on one ledger. Never negative."""

    def __init__(self):
        self._balances: Dict[str, Dict[str, int]] = {}

    def balance_of(self, token: str, account: str) -> int:
        return self._balances.get(token, {}).get(account, 0)

    def credit(self, token: str, account: str, amount: int) -> None:
        accounts = self._balances.setdefault(token, {})
        accounts[account] = accounts.get(account, 0) + amount

    def debit(self, token: str, account: str, amount: int) -> None:
        current = self.balance_of(token, account)
        if current < amount:
            raise CustodyFailure(
                ErrorCode.INSUFFICIENT_BALANCE,
                f"balance {current} < {amount}",
                token=token,
                account=account,
            )
        self._balances[token][account] = current - amount
        InvariantChecker.check_non_negative("balance", self._balances[token][account])

    def total(self, token: str) -> int:
        return sum(self._balances.get(token, {}).values())


# =============================================================================
# ROOT REGISTRY
# =============================================================================

class ChainRootRegistry:
    """Latest synced root per remote chain. Overwritten on every sync."""

    def __init__(self):
        self._roots: Dict[int, str] = {}
        self._synced_at: Dict[int, int] = {}

    def set(self, chain_id: int, root: Optional[str], at: Optional[int]) -> None:
        """Store a root; `root=None` forgets the chain."""
        if root is None:
            self._roots.pop(chain_id, None)
            self._synced_at.pop(chain_id, None)
            return
        self._roots[chain_id] = root
        self._synced_at[chain_id] = at

    def get(self, chain_id: int) -> Optional[str]:
        return self._roots.get(chain_id)

    def synced_at(self, chain_id: int) -> Optional[int]:
        return self._synced_at.get(chain_id)

    def require(self, chain_id: int) -> str:
        root = self._roots.get(chain_id)
        if root is None:
            raise StateConflict(ErrorCode.ROOT_NOT_SYNCED, f"no root synced for chain {chain_id}")
        return root


# =============================================================================
# LEDGER STATE
# =============================================================================

def custody_address(chain_id: int, label: str) -> str:
    """Deterministic account holding a ledger's escrow."""
    digest = hashlib.sha256(f"shadowswap.custody/{label}/{chain_id}".encode()).digest()
    return "0x" + digest[-20:].hex()


@dataclass
class LedgerStore:
    """Persisted ledger state. Everything here is rolled back on failure."""
    owner: str
    relayer: str
    fee_collector: str
    fee_bps: int
    paused: bool = False
    paused_at: int = 0
    registry: TokenRegistry = field(default_factory=TokenRegistry)
    balances: Balances = field(default_factory=Balances)
    roots: ChainRootRegistry = field(default_factory=ChainRootRegistry)


class LedgerState:
    """
    One ledger: persisted store plus runtime collaborators.

    Subclasses set `component`, `label` and `store_class`.
    """

    component: Component = Component.SOURCE
    label: str = "ledger"
    store_class = LedgerStore

    def __init__(
        self,
        chain_id: int,
        owner: str,
        relayer: str,
        fee_collector: str,
        clock: Optional[Clock] = None,
        params: Optional[ProtocolParams] = None,
    ):
        self.chain_id = Validators.chain_id(chain_id)
        self.params = params or ProtocolParams.from_config()
        self.clock = clock or SystemClock()
        self.address = custody_address(self.chain_id, self.label)
        self.store = self.store_class(
            owner=Validators.address(owner, "owner"),
            relayer=Validators.address(relayer, "relayer"),
            fee_collector=Validators.address(fee_collector, "fee_collector"),
            fee_bps=self.params.fee_bps,
        )
        self.events = EventLog()
        self.transfer_guard: Optional[TransferGuard] = None
        self.log: ShadowswapLogger = get_logger(f"chain{self.chain_id}", self.component)
        self.audit = AuditLogger(self.log)
        self._lock = threading.RLock()
        self._pending: Optional[List[Event]] = None
        self._undo: Optional[List[Callable[[], None]]] = None

    def now(self) -> int:
        return self.clock.now()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(chain_id={self.chain_id})"


@contextlib.contextmanager
def atomic(state: LedgerState) -> Iterator[LedgerState]:
    """Run a transition as one all-or-nothing unit (nested calls join the outer one)."""
    records = []
    with state._lock:
        if state._pending is not None:
            yield state
            return

        state._pending = []
        state._undo = []
        try:
            yield state
        except BaseException:
            undo, state._undo, state._pending = state._undo, None, None
            for step in reversed(undo):
                step()
            raise

        events, state._pending, state._undo = state._pending, None, None
        if events:
            records = state.events.commit(events)

    if records:
        state.events.notify(records)


# =============================================================================
# UNDO JOURNAL
# =============================================================================

def _journal(state: LedgerState) -> List[Callable[[], None]]:
    if state._undo is None:
        raise InvariantViolation("store mutated outside atomic()")
    return state._undo


def on_rollback(state: LedgerState, undo: Callable[[], None]) -> None:
    """Register the inverse of a store mutation made in the current transition."""
    _journal(state).append(undo)


_MISSING = object()


def put_entry(state: LedgerState, mapping: MutableMapping[str, Any], key: str, value: Any) -> None:
    _journal(state)
    previous = mapping.get(key, _MISSING)
    mapping[key] = value
    if previous is _MISSING:
        on_rollback(state, lambda: mapping.pop(key, None))
    else:
        on_rollback(state, lambda: mapping.__setitem__(key, previous))


def add_member(state: LedgerState, members: Set[str], item: str) -> None:
    _journal(state)
    if item in members:
        return
    members.add(item)
    on_rollback(state, lambda: members.discard(item))


def set_field(state: LedgerState, obj: Any, name: str, value: Any) -> None:
    _journal(state)
    previous = getattr(obj, name)
    setattr(obj, name, value)
    on_rollback(state, lambda: setattr(obj, name, previous))


def emit(state: LedgerState, event: Event) -> None:
    """Buffer an event for the transition in progress."""
    if state._pending is None:
        raise InvariantViolation(f"{event.event_type} emitted outside atomic()")
    event.chain_id = state.chain_id
    event.ledger_time = state.now()
    event.correlation_id = get_correlation_id()
    state._pending.append(event)


def _audit(state: LedgerState, actor: str, action: str, resource_id: str, **details) -> None:
    if get_config().observability.audit_enabled.get():
        state.audit.log(actor, action, state.label, resource_id, "success", **details)


# =============================================================================
# ACCESS CONTROL
# =============================================================================

def require_owner(state: LedgerState, caller: str) -> str:
    caller = Validators.address(caller, "caller")
    if caller != state.store.owner:
        raise AuthorizationFailure(ErrorCode.NOT_OWNER, "caller is not the owner", caller=caller)
    return caller


def require_relayer(state: LedgerState, caller: str) -> str:
    caller = Validators.address(caller, "caller")
    if caller != state.store.relayer:
        raise AuthorizationFailure(ErrorCode.NOT_RELAYER, "caller is not the relayer", caller=caller)
    return caller


def require_not_paused(state: LedgerState) -> None:
    if state.store.paused:
        raise StateConflict(ErrorCode.PAUSED, "ledger is paused")


# =============================================================================
# CUSTODY
# =============================================================================

def _transfer(state: LedgerState, token: str, src: str, dst: str, amount: int) -> None:
    if amount == 0:
        return
    guard = state.transfer_guard
    if guard is not None and not guard(token, src, dst, amount):
        raise CustodyFailure(ErrorCode.TRANSFER_FAILED, "transfer rejected", token=token, to=dst)
    balances = state.store.balances
    balances.debit(token, src, amount)
    balances.credit(token, dst, amount)
    on_rollback(state, lambda: (balances.debit(token, dst, amount), balances.credit(token, src, amount)))


def pull_into_escrow(state: LedgerState, token: str, account: str, amount: int) -> None:
    """Move `amount` from `account` into this ledger's custody."""
    _transfer(state, token, account, state.address, amount)


def pay_from_escrow(state: LedgerState, token: str, to: str, amount: int) -> None:
    """Pay out of custody, re-checking the escrow balance first."""
    available = escrow_balance(state, token)
    if available < amount:
        raise CustodyFailure(
            ErrorCode.INSUFFICIENT_BALANCE,
            f"escrow {available} < payout {amount}",
            token=token,
        )
    _transfer(state, token, state.address, to, amount)


def mint(state: LedgerState, token: str, account: str, amount: int) -> None:
    """Credit an account on this ledger (host-environment funding hook)."""
    token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
    account = Validators.address(account, "account")
    amount = Validators.amount(amount)
    with atomic(state):
        balances = state.store.balances
        balances.credit(token, account, amount)
        on_rollback(state, lambda: balances.debit(token, account, amount))


# =============================================================================
# ROOT SYNC
# =============================================================================

def sync_remote_root(state: LedgerState, caller: str, chain_id: int, root: str, kind: str) -> None:
    """Overwrite the stored root for `chain_id`. Relayer only; no proof of remote state."""
    with atomic(state):
        require_relayer(state, caller)
        chain_id = Validators.chain_id(chain_id)
        root = Validators.bytes32(root, "root")
        roots = state.store.roots
        previous = (roots.get(chain_id), roots.synced_at(chain_id))
        roots.set(chain_id, root, state.now())
        on_rollback(state, lambda: roots.set(chain_id, *previous))
        emit(state, RootSynced(kind=kind, remote_chain=chain_id, root=root))
    state.log.info("root synced", operation="sync_root", remote_chain=chain_id, root=root, kind=kind)


# =============================================================================
# ADMINISTRATION
# =============================================================================

def _journal_registry(state: LedgerState) -> None:
    registry = state.store.registry
    saved = registry.snapshot()
    on_rollback(state, lambda: registry.restore(saved))


def add_token(state: LedgerState, caller: str, token: str, min_amount: int, max_amount: int, decimals: int) -> TokenConfig:
    with atomic(state):
        caller = require_owner(state, caller)
        _journal_registry(state)
        config = state.store.registry.add(token, min_amount, max_amount, decimals)
        token = token.strip().lower()
        emit(state, TokenAdded(token=token, min_amount=min_amount, max_amount=max_amount, decimals=decimals))
        _audit(state, caller, "add_token", token, min_amount=min_amount, max_amount=max_amount)
    return config


def update_token_config(state: LedgerState, caller: str, token: str, min_amount: int, max_amount: int, decimals: int) -> TokenConfig:
    with atomic(state):
        caller = require_owner(state, caller)
        _journal_registry(state)
        config = state.store.registry.update(token, min_amount, max_amount, decimals)
        token = token.strip().lower()
        emit(state, TokenConfigUpdated(token=token, min_amount=min_amount, max_amount=max_amount, decimals=decimals))
        _audit(state, caller, "update_token_config", token, min_amount=min_amount, max_amount=max_amount)
    return config


def remove_token(state: LedgerState, caller: str, token: str) -> None:
    """Stop accepting `token`. Escrow already held for it is unaffected."""
    with atomic(state):
        caller = require_owner(state, caller)
        _journal_registry(state)
        state.store.registry.remove(token)
        token = token.strip().lower()
        emit(state, TokenRemoved(token=token))
        _audit(state, caller, "remove_token", token)


def pause(state: LedgerState, caller: str) -> None:
    with atomic(state):
        caller = require_owner(state, caller)
        if state.store.paused:
            raise StateConflict(ErrorCode.PAUSED, "ledger is already paused")
        set_field(state, state.store, "paused", True)
        set_field(state, state.store, "paused_at", state.now())
        emit(state, Paused(by=caller))
        _audit(state, caller, "pause", str(state.chain_id))
    state.log.warning("ledger paused", operation="pause")


def unpause(state: LedgerState, caller: str) -> None:
    with atomic(state):
        caller = require_owner(state, caller)
        if not state.store.paused:
            raise StateConflict(ErrorCode.NOT_PAUSED, "ledger is not paused")
        set_field(state, state.store, "paused", False)
        set_field(state, state.store, "paused_at", 0)
        emit(state, Unpaused(by=caller))
        _audit(state, caller, "unpause", str(state.chain_id))
    state.log.info("ledger unpaused", operation="unpause")


def emergency_withdraw(state: LedgerState, caller: str, token: str, amount: int) -> None:
    """Sweep custody funds to the fee collector after a long pause."""
    with atomic(state):
        caller = require_owner(state, caller)
        token = Validators.address(token, "token", code=ErrorCode.INVALID_TOKEN)
        amount = Validators.amount(amount)
        if not state.store.paused:
            raise StateConflict(ErrorCode.NOT_PAUSED, "emergency withdrawal requires a paused ledger")
        unlock_at = state.store.paused_at + state.params.emergency_delay
        if state.now() < unlock_at:
            raise StateConflict(ErrorCode.EMERGENCY_DELAY_ACTIVE, f"available at {unlock_at}")
        to = state.store.fee_collector
        pay_from_escrow(state, token, to, amount)
        emit(state, EmergencyWithdrawal(token=token, amount=amount, to=to))
        _audit(state, caller, "emergency_withdraw", token, amount=amount, to=to)
    state.log.warning("emergency withdrawal", operation="emergency_withdraw", token=token, amount=amount)


def _set_role(state: LedgerState, caller: str, role: str, value: str) -> None:
    with atomic(state):
        caller = require_owner(state, caller)
        value = Validators.address(value, role)
        previous = getattr(state.store, role)
        set_field(state, state.store, role, value)
        emit(state, RoleUpdated(role=role, previous=previous, current=value))
        _audit(state, caller, f"set_{role}", value, previous=previous)


def set_relayer(state: LedgerState, caller: str, relayer: str) -> None:
    _set_role(state, caller, "relayer", relayer)


def set_fee_collector(state: LedgerState, caller: str, fee_collector: str) -> None:
    _set_role(state, caller, "fee_collector", fee_collector)


def set_fee_bps(state: LedgerState, caller: str, fee_bps: int) -> None:
    with atomic(state):
        caller = require_owner(state, caller)
        set_field(state, state.store, "fee_bps", Validators.fee_bps(fee_bps))
        _audit(state, caller, "set_fee_bps", str(state.chain_id), fee_bps=fee_bps)


# =============================================================================
# READ VIEWS
# =============================================================================

def escrow_balance(state: LedgerState, token: str) -> int:
    return state.store.balances.balance_of(token.strip().lower(), state.address)


def balance_of(state: LedgerState, token: str, account: str) -> int:
    return state.store.balances.balance_of(token.strip().lower(), account.strip().lower())


def supported_tokens(state: LedgerState) -> List[str]:
    return state.store.registry.tokens


def token_config(state: LedgerState, token: str) -> Optional[TokenConfig]:
    return state.store.registry.get(token)


def is_paused(state: LedgerState) -> bool:
    return state.store.paused
