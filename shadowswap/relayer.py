"""
SHADOWSWAP Relayer

Off-ledger coordinator connecting the Source and Destination ledgers.

Components:
    RootSyncChannel   copies one tree root from one ledger into the other,
                      skipping unchanged roots and keeping a sync history
    Relayer           consumes both event logs, mirrors the commitment and
                      fill trees, and drives register / settle / refund /
                      claim using proofs built from its mirrors

The relayer is the explicit trust boundary of the protocol: ledgers accept
whatever root it writes. It holds no funds. Users who want a hands-off
claim seal their secret to the relayer's X25519 key (shadowswap.sealing);
the relayer holds it until the fill appears and then claims.

One pass (run_once):

    poll ─▶ sync roots ─▶ register pending ─▶ poll ─▶ sync roots ─▶ settle filled
         ─▶ refund expired ─▶ claim filled

Failures are logged with their error code and reported in the
RelayerReport. Nothing is retried within a pass; the next pass sees the
fresh ledger state and tries again where that still makes sense.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from shadowswap import intent_pool, settlement
from shadowswap.claims import ClaimAuthorization, verify_claim
from shadowswap.config import RelayerConfig, get_config
from shadowswap.events import (
    IntentCancelled,
    IntentCreated,
    IntentFilled,
    IntentRefunded,
    IntentRegistered,
    IntentSettled,
    WithdrawalClaimed,
)
from shadowswap.hardening import BridgeError, ErrorCode, InvariantViolation, Validators
from shadowswap.intent_pool import SourceLedger
from shadowswap.merkle import MerkleAccumulator
from shadowswap.observability import Component, correlation_scope, get_logger
from shadowswap.sealing import ClaimSecret, SealingKey
from shadowswap.settlement import DestinationLedger

_log = get_logger("relayer", Component.RELAYER)


class SyncType(Enum):
    COMMITMENT = "commitment"  # source commitment root -> destination
    FILL = "fill"              # destination fill root -> source


@dataclass(frozen=True)
class RootSyncRecord:
    sync_type: str
    chain_id: int
    root: str
    tree_size: int
    synced_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RootSyncChannel:
    """
    One-directional root copy between the two ledgers.

    `chain_id` in each record is the chain the root was read from, which is
    the key it is stored under on the receiving ledger.
    """

    def __init__(
        self,
        source: SourceLedger,
        destination: DestinationLedger,
        sync_type: SyncType,
        relayer: str,
        skip_unchanged: bool = True,
    ):
        self.source = source
        self.destination = destination
        self.sync_type = sync_type
        self.relayer = relayer
        self.skip_unchanged = skip_unchanged
        self.history: List[RootSyncRecord] = []

    @property
    def last(self) -> Optional[RootSyncRecord]:
        return self.history[-1] if self.history else None

    def _read(self) -> Tuple[str, int]:
        if self.sync_type is SyncType.COMMITMENT:
            with self.source._lock:
                return intent_pool.commitment_root(self.source), intent_pool.commitment_tree_size(self.source)
        with self.destination._lock:
            return settlement.fill_root(self.destination), settlement.fill_tree_size(self.destination)

    def sync(self) -> Optional[RootSyncRecord]:
        """Copy the current root across; returns None when nothing was written."""
        root, size = self._read()
        if size == 0:
            return None
        last = self.last
        if self.skip_unchanged and last is not None and last.root == root:
            _log.debug("root unchanged, skipping sync", operation="sync_root", sync_type=self.sync_type.value)
            return None

        if self.sync_type is SyncType.COMMITMENT:
            chain_id = self.source.chain_id
            settlement.sync_source_root(self.destination, self.relayer, chain_id, root)
            synced_at = self.destination.now()
        else:
            chain_id = self.destination.chain_id
            intent_pool.sync_dest_root(self.source, self.relayer, chain_id, root)
            synced_at = self.source.now()

        record = RootSyncRecord(
            sync_type=self.sync_type.value,
            chain_id=chain_id,
            root=root,
            tree_size=size,
            synced_at=synced_at,
        )
        self.history.append(record)
        return record



@dataclass
class RelayerReport:
    """Outcome of one relayer pass."""
    correlation_id: str = ""
    events_seen: int = 0
    synced: List[RootSyncRecord] = field(default_factory=list)
    registered: List[str] = field(default_factory=list)
    settled: List[str] = field(default_factory=list)
    refunded: List[str] = field(default_factory=list)
    claimed: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "events_seen": self.events_seen,
            "synced": [r.to_dict() for r in self.synced],
            "registered": list(self.registered),
            "settled": list(self.settled),
            "refunded": list(self.refunded),
            "claimed": list(self.claimed),
            "failures": list(self.failures),
        }


@dataclass
class RelayerMetrics:
    """Running counters since the relayer was constructed."""
    passes: int = 0
    events_seen: int = 0
    roots_synced: int = 0
    intents_registered: int = 0
    intents_settled: int = 0
    intents_refunded: int = 0
    secrets_received: int = 0
    claims_submitted: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    settled_volume: Dict[str, int] = field(default_factory=dict)


# Claim failures that no later pass can fix; the held secret is dropped.
_FINAL_CLAIM_ERRORS = frozenset({
    ErrorCode.ALREADY_CLAIMED,
    ErrorCode.NULLIFIER_USED,
    ErrorCode.INVALID_COMMITMENT,
    ErrorCode.INVALID_SIGNATURE,
})


class Relayer:
    """
    Drives both ledgers from their event logs.

    Only open work is tracked: an intent leaves `intents`, `fills` and
    `registered` as soon as it is settled, refunded or cancelled, and a
    fill leaves `claimable` once it is claimed. The commitment and fill
    mirrors keep every leaf because proofs need the whole tree.

    Example:
        relayer = Relayer(relayer_address, source, destination)
        sealed = seal_claim_secret(relayer.public_key, intent_id, claim)
        relayer.submit_sealed_secret(intent_id, sealed)
        report = relayer.run_once()
    """

    def __init__(
        self,
        identity: str,
        source: SourceLedger,
        destination: DestinationLedger,
        config: Optional[RelayerConfig] = None,
        sealing_key: Optional[SealingKey] = None,
    ):
        self.identity = Validators.address(identity, "relayer")
        self.source = source
        self.destination = destination
        self.config = config or get_config().relayer
        self.sealing_key = sealing_key or SealingKey.generate()

        skip = self.config.skip_unchanged_roots.get()
        self.commitment_channel = RootSyncChannel(source, destination, SyncType.COMMITMENT, self.identity, skip)
        self.fill_channel = RootSyncChannel(source, destination, SyncType.FILL, self.identity, skip)

        self.commitment_mirror = MerkleAccumulator()
        self.fill_mirror = MerkleAccumulator()
        self._source_cursor = 0
        self._dest_cursor = 0

        self.intents: Dict[str, IntentCreated] = {}
        self.fills: Dict[str, IntentFilled] = {}
        self.registered: Set[str] = set()
        self.claimable: Set[str] = set()
        self.pending_claims: Dict[str, ClaimSecret] = {}

        self.metrics = RelayerMetrics()
        self._started = time.monotonic()
        self._lock = threading.RLock()

    @property
    def batch_size(self) -> int:
        return self.config.batch_size.get()

    @property
    def public_key(self) -> str:
        """X25519 key users seal their claim secrets to."""
        return self.sealing_key.public_key

    def _close(self, intent_id: str) -> None:
        self.intents.pop(intent_id, None)
        self.fills.pop(intent_id, None)
        self.registered.discard(intent_id)

    # -------------------------------------------------------------------------
    # Event ingestion
    # -------------------------------------------------------------------------

    def poll(self) -> int:
        """Consume new events from both ledgers; returns how many were read."""
        seen = 0

        for record in self.source.events.read(self._source_cursor):
            self._source_cursor = record.sequence_number
            seen += 1
            event = record.event
            if isinstance(event, IntentCreated):
                index = self.commitment_mirror.append(event.commitment)
                if index != event.commitment_index:
                    raise InvariantViolation(
                        f"commitment mirror diverged: index {index} != {event.commitment_index}"
                    )
                self.intents[event.intent_id] = event
            elif isinstance(event, (IntentSettled, IntentRefunded, IntentCancelled)):
                self._close(event.intent_id)

        for record in self.destination.events.read(self._dest_cursor):
            self._dest_cursor = record.sequence_number
            seen += 1
            event = record.event
            if isinstance(event, IntentRegistered):
                if event.intent_id in self.intents:
                    self.registered.add(event.intent_id)
            elif isinstance(event, IntentFilled):
                index = self.fill_mirror.append(event.intent_id)
                if index != event.fill_index:
                    raise InvariantViolation(f"fill mirror diverged: index {index} != {event.fill_index}")
                self.claimable.add(event.intent_id)
                if event.intent_id in self.intents:
                    self.fills[event.intent_id] = event
            elif isinstance(event, WithdrawalClaimed):
                self.claimable.discard(event.intent_id)
                with self._lock:
                    self.pending_claims.pop(event.intent_id, None)

        with self._lock:
            self.metrics.events_seen += seen
        return seen

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def sync_roots(self) -> List[RootSyncRecord]:
        records = []
        for channel in (self.commitment_channel, self.fill_channel):
            record = channel.sync()
            if record is not None:
                records.append(record)
        with self._lock:
            self.metrics.roots_synced += len(records)
        return records

    def _attempt(
        self, report: RelayerReport, operation: str, intent_id: str, fn: Callable[[], Any],
    ) -> Optional[BridgeError]:
        try:
            fn()
        except BridgeError as exc:
            _log.error(
                f"{operation} failed",
                error_code=exc.code.value,
                operation=operation,
                intent_id=intent_id,
                reason=exc.message,
            )
            report.failures.append({"operation": operation, "intent_id": intent_id, "code": exc.code.value})
            with self._lock:
                self.metrics.failures += 1
                self.metrics.last_error = f"{operation}: {exc.code.value}"
            return exc
        return None

    def register_pending(self, report: Optional[RelayerReport] = None) -> List[str]:
        """Register created intents covered by the last synced commitment root."""
        report = report if report is not None else RelayerReport()
        synced = self.commitment_channel.last
        if synced is None:
            return []

        tree = self.commitment_mirror.prefix(min(synced.tree_size, self.commitment_mirror.size))
        now = self.destination.now()
        done: List[str] = []
        for intent_id, event in list(self.intents.items()):
            if len(done) >= self.batch_size:
                break
            if intent_id in self.registered:
                continue
            if event.dest_chain != self.destination.chain_id or event.deadline <= now:
                continue
            if event.commitment_index >= tree.size:
                continue

            proof = tree.proof(event.commitment_index)
            error = self._attempt(report, "register_intent", intent_id, lambda: settlement.register_intent(
                self.destination,
                self.identity,
                intent_id,
                event.commitment,
                event.dest_token,
                event.dest_amount,
                self.source.chain_id,
                event.deadline,
                proof,
            ))
            if error is None:
                self.registered.add(intent_id)
                done.append(intent_id)

        with self._lock:
            self.metrics.intents_registered += len(done)
        report.registered.extend(done)
        return done

    def settle_filled(self, report: Optional[RelayerReport] = None) -> List[str]:
        """Settle filled intents covered by the last synced fill root."""
        report = report if report is not None else RelayerReport()
        synced = self.fill_channel.last
        if synced is None:
            return []

        tree = self.fill_mirror.prefix(min(synced.tree_size, self.fill_mirror.size))
        done: List[str] = []
        for intent_id, fill in list(self.fills.items()):
            if len(done) >= self.batch_size:
                break
            if fill.fill_index >= tree.size:
                continue

            proof = tree.proof(fill.fill_index)
            error = self._attempt(report, "settle_intent", intent_id, lambda: intent_pool.settle_intent(
                self.source, self.identity, intent_id, fill.solver, proof,
            ))
            if error is None:
                intent = self.intents[intent_id]
                with self._lock:
                    self.metrics.intents_settled += 1
                    volume = self.metrics.settled_volume
                    volume[intent.source_token] = volume.get(intent.source_token, 0) + intent.source_amount
                self._close(intent_id)
                done.append(intent_id)

        report.settled.extend(done)
        return done

    def refund_expired(self, report: Optional[RelayerReport] = None) -> List[str]:
        """Refund created intents past their deadline that were never filled."""
        report = report if report is not None else RelayerReport()
        now = self.source.now()
        done: List[str] = []
        for intent_id, event in list(self.intents.items()):
            if len(done) >= self.batch_size:
                break
            if intent_id in self.fills or now < event.deadline:
                continue

            error = self._attempt(report, "refund", intent_id, lambda: intent_pool.refund(
                self.source, self.identity, intent_id,
            ))
            if error is None:
                self._close(intent_id)
                done.append(intent_id)

        with self._lock:
            self.metrics.intents_refunded += len(done)
        report.refunded.extend(done)
        return done

    def claim_filled(self, report: Optional[RelayerReport] = None) -> List[str]:
        """Claim filled intents whose sealed secrets the relayer holds."""
        report = report if report is not None else RelayerReport()
        with self._lock:
            ready = [(i, c) for i, c in self.pending_claims.items() if i in self.claimable]

        done: List[str] = []
        for intent_id, claim in ready:
            if len(done) >= self.batch_size:
                break
            error = self._attempt(report, "claim_withdrawal", intent_id, lambda: settlement.claim_withdrawal(
                self.destination,
                self.identity,
                intent_id,
                claim.nullifier,
                claim.recipient,
                claim.secret,
                claim.authorization,
            ))
            if error is None or error.code in _FINAL_CLAIM_ERRORS:
                with self._lock:
                    self.pending_claims.pop(intent_id, None)
            if error is None:
                self.claimable.discard(intent_id)
                done.append(intent_id)

        with self._lock:
            self.metrics.claims_submitted += len(done)
        report.claimed.extend(done)
        return done

    # -------------------------------------------------------------------------
    # Claims
    # -------------------------------------------------------------------------

    def submit_sealed_secret(self, intent_id: str, sealed: str) -> ClaimSecret:
        """Accept a claim secret sealed to this relayer; claimed once the intent is filled.

        The authorization signature is checked on intake so a bad one is
        rejected here rather than on every later pass.
        """
        intent_id = Validators.bytes32(intent_id, "intent_id")
        claim = self.sealing_key.open(intent_id, sealed)
        verify_claim(claim.authorization, self.destination.chain_id, intent_id, claim.nullifier, claim.recipient)
        with self._lock:
            self.pending_claims[intent_id] = claim
            self.metrics.secrets_received += 1
        _log.info("sealed secret accepted", operation="submit_sealed_secret", intent_id=intent_id)
        return claim

    def submit_claim(
        self,
        intent_id: str,
        secret: str,
        nullifier: str,
        recipient: str,
        authorization: ClaimAuthorization,
    ) -> int:
        """Claim a fill for `recipient` right away. Errors propagate to the caller."""
        with correlation_scope():
            payout = settlement.claim_withdrawal(
                self.destination,
                self.identity,
                intent_id,
                nullifier,
                recipient,
                secret,
                authorization,
            )
        with self._lock:
            self.metrics.claims_submitted += 1
        _log.info("claim submitted", operation="submit_claim", intent_id=intent_id, recipient=recipient)
        return payout

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def run_once(self) -> RelayerReport:
        with correlation_scope() as cid:
            report = RelayerReport(correlation_id=cid)
            report.events_seen += self.poll()
            report.synced.extend(self.sync_roots())
            self.register_pending(report)
            report.events_seen += self.poll()
            report.synced.extend(self.sync_roots())
            self.settle_filled(report)
            self.refund_expired(report)
            self.claim_filled(report)

            with self._lock:
                self.metrics.passes += 1
            _log.info(
                "relayer pass complete",
                operation="run_once",
                registered=len(report.registered),
                settled=len(report.settled),
                refunded=len(report.refunded),
                claimed=len(report.claimed),
                failures=len(report.failures),
            )
        return report

    def run_forever(self, stop: threading.Event, max_passes: Optional[int] = None) -> int:
        """Run passes every sync_interval_seconds until `stop` is set."""
        passes = 0
        interval = self.config.sync_interval_seconds.get()
        while not stop.is_set():
            self.run_once()
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
            stop.wait(interval)
        return passes

    def get_metrics(self) -> Dict[str, Any]:
        """Counters plus the current size of the open working set."""
        with self._lock:
            data = asdict(self.metrics)
            data["held_secrets"] = len(self.pending_claims)
        data["open_intents"] = len(self.intents)
        data["unclaimed_fills"] = len(self.claimable)
        data["uptime_seconds"] = int(time.monotonic() - self._started)
        return data
