"""
SHADOWSWAP Event Infrastructure

Typed ledger events and the per-ledger append-only event log.

Every ledger state transition emits one or more events. The log is the
only way off-ledger processes (relayer, solvers, indexers) discover new
intents and fills; there is no push notification beyond the synchronous
subscriber callbacks below.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────┐
    │                           EVENT LOG                              │
    │                                                                  │
    │  append(events)        read(cursor)           subscribe(types)   │
    │  ├─ after commit       ├─ records > cursor    ├─ sync callbacks  │
    │  ├─ sequence numbers   └─ max_count           └─ type filters    │
    │  └─ immutable records                                            │
    │                                                                  │
    │  Source Ledger          Destination Ledger      Both             │
    │  ├─ IntentCreated       ├─ IntentRegistered     ├─ RootSynced    │
    │  ├─ IntentSettled       ├─ IntentFilled         ├─ TokenAdded    │
    │  ├─ IntentRefunded      └─ WithdrawalClaimed    ├─ Paused        │
    │  └─ IntentCancelled                             └─ ...           │
    └──────────────────────────────────────────────────────────────────┘

Ordering: records in one log are totally ordered by sequence number.
There is no ordering across the two ledgers' logs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all ledger events.

    Events are immutable facts. `chain_id` names the ledger that emitted the
    event and `ledger_time` is that ledger's clock at emission.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    chain_id: int = 0
    ledger_time: int = 0

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    def digest(self) -> str:
        """SHA-256 over the sorted-key JSON of the event content."""
        payload = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ════════════════════════════════════════════════════════════════════════════
# SOURCE LEDGER EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class IntentCreated(Event):
    """Deposit escrowed and commitment appended to the commitment tree."""
    intent_id: str = ""
    commitment: str = ""
    commitment_index: int = 0
    source_token: str = ""
    source_amount: int = 0
    dest_token: str = ""
    dest_amount: int = 0
    dest_chain: int = 0
    deadline: int = 0
    refund_to: str = ""


@dataclass
class IntentSettled(Event):
    """Source escrow released to the solver."""
    intent_id: str = ""
    solver: str = ""
    token: str = ""
    amount: int = 0
    fee: int = 0


@dataclass
class IntentRefunded(Event):
    """Escrow returned after the deadline. `path` is "relayer" or "user"."""
    intent_id: str = ""
    refund_to: str = ""
    token: str = ""
    amount: int = 0
    path: str = "relayer"


@dataclass
class IntentCancelled(Event):
    intent_id: str = ""
    refund_to: str = ""
    token: str = ""
    amount: int = 0


# ════════════════════════════════════════════════════════════════════════════
# DESTINATION LEDGER EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class IntentRegistered(Event):
    intent_id: str = ""
    commitment: str = ""
    token: str = ""
    amount: int = 0
    source_chain: int = 0
    deadline: int = 0


@dataclass
class IntentFilled(Event):
    """Solver payout escrowed and intent id appended to the fill tree."""
    intent_id: str = ""
    solver: str = ""
    token: str = ""
    amount: int = 0
    source_chain: int = 0
    fill_index: int = 0


@dataclass
class WithdrawalClaimed(Event):
    """Fill paid out to the recipient. The secret itself is never logged."""
    intent_id: str = ""
    nullifier: str = ""
    recipient: str = ""
    token: str = ""
    amount: int = 0
    fee: int = 0


# ════════════════════════════════════════════════════════════════════════════
# SHARED EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RootSynced(Event):
    """Remote root written into this ledger. `kind` is "dest" or "source"."""
    kind: str = ""
    remote_chain: int = 0
    root: str = ""


@dataclass
class TokenAdded(Event):
    token: str = ""
    min_amount: int = 0
    max_amount: int = 0
    decimals: int = 0


@dataclass
class TokenConfigUpdated(Event):
    token: str = ""
    min_amount: int = 0
    max_amount: int = 0
    decimals: int = 0


@dataclass
class TokenRemoved(Event):
    token: str = ""


@dataclass
class Paused(Event):
    by: str = ""


@dataclass
class Unpaused(Event):
    by: str = ""


@dataclass
class RoleUpdated(Event):
    """Relayer or fee collector address replaced by the owner."""
    role: str = ""
    previous: str = ""
    current: str = ""


@dataclass
class EmergencyWithdrawal(Event):
    token: str = ""
    amount: int = 0
    to: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventRecord:
    """A committed event with its position in the log (1-based)."""
    sequence_number: int
    event: Event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
        }


@dataclass
class _Subscription:
    handler: EventHandler
    event_types: Set[Type[Event]]


class EventLog:
    """
    Append-only, per-ledger event log.

    Readers keep a cursor (the last sequence number they processed) and call
    ``read(cursor)``. Subscribers are called synchronously after each append,
    outside the log lock; ledgers commit under their own lock and notify
    after releasing it.
    A failing subscriber is logged and does not affect the committed events
    or other subscribers.

    Example:
        log = EventLog()

        @log.subscribe(IntentCreated)
        def on_created(event):
            ...

        records = log.read(cursor=0)
    """

    def __init__(self):
        self._records: List[EventRecord] = []
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def position(self) -> int:
        """Sequence number of the newest record (0 when empty)."""
        with self._lock:
            return len(self._records)

    def subscribe(self, *event_types: Type[Event]) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for the given event types (all if none)."""
        def decorator(handler: EventHandler) -> EventHandler:
            with self._lock:
                self._subscriptions.append(
                    _Subscription(handler=handler, event_types=set(event_types) or {Event})
                )
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            before = len(self._subscriptions)
            self._subscriptions = [s for s in self._subscriptions if s.handler != handler]
            return len(self._subscriptions) < before

    def append(self, events: List[Event]) -> List[EventRecord]:
        """Commit events in order and notify subscribers."""
        records = self.commit(events)
        self.notify(records)
        return records

    def commit(self, events: List[Event]) -> List[EventRecord]:
        """Assign sequence numbers and store the events without notifying anyone."""
        with self._lock:
            records = []
            for event in events:
                record = EventRecord(sequence_number=len(self._records) + 1, event=event)
                self._records.append(record)
                records.append(record)
            return records

    def notify(self, records: List[EventRecord]) -> None:
        """Call matching subscribers for already committed records."""
        with self._lock:
            subscriptions = list(self._subscriptions)

        for record in records:
            for sub in subscriptions:
                if any(isinstance(record.event, t) for t in sub.event_types):
                    self._call_handler(sub.handler, record.event)

    @staticmethod
    def _call_handler(handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "event handler %s failed for %s",
                getattr(handler, "__name__", repr(handler)),
                event.event_type,
            )

    def read(self, cursor: int = 0, max_count: Optional[int] = None) -> List[EventRecord]:
        """Records with sequence number greater than `cursor`."""
        if cursor < 0:
            raise ValueError("cursor must be >= 0")
        with self._lock:
            end = None if max_count is None else cursor + max_count
            return list(self._records[cursor:end])

    def events_of(self, *event_types: Type[Event]) -> List[Event]:
        """All committed events of the given types, in order."""
        with self._lock:
            return [r.event for r in self._records if isinstance(r.event, event_types)]
