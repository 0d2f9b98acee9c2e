"""
Destination ledger (settlement) tests.
"""

import threading
from types import SimpleNamespace

import pytest

from shadowswap import intent_pool, ledger, settlement
from shadowswap.claims import ClaimAuthorization
from shadowswap.config import HOUR
from shadowswap.events import IntentFilled, IntentRegistered, WithdrawalClaimed
from shadowswap.field import compute_commitment, generate_intent_id, generate_secret
from shadowswap.hardening import (
    AuthorizationFailure,
    CustodyFailure,
    ErrorCode,
    StateConflict,
    ValidationFailure,
)
from shadowswap.settlement import FillStatus


class TestRegisterIntent:
    """Tests for proof-gated registration."""

    def test_register_records_params(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        registered = flow.register(params)

        assert registered.commitment == params.commitment
        assert registered.amount == 1000
        assert registered.source_chain == flow.SOURCE_CHAIN
        assert settlement.is_registered(flow.destination, params.intent_id)
        assert settlement.intent_status(flow.destination, params.intent_id) == FillStatus.REGISTERED
        assert len(flow.destination.events.events_of(IntentRegistered)) == 1

    def test_register_requires_synced_root(self, flow):
        params = flow.create(1000)
        with pytest.raises(StateConflict) as exc:
            flow.register(params)
        assert exc.value.code == ErrorCode.ROOT_NOT_SYNCED

    def test_register_twice_fails(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.register(params)
        with pytest.raises(StateConflict) as exc:
            flow.register(params)
        assert exc.value.code == ErrorCode.ALREADY_REGISTERED

    def test_stale_root_rejects_newer_commitment(self, flow):
        first = flow.create(1000)
        flow.sync_commitments()
        flow.register(first)

        second = flow.create(2000)
        with pytest.raises(AuthorizationFailure) as exc:
            flow.register(second)
        assert exc.value.code == ErrorCode.INVALID_PROOF

        flow.sync_commitments()
        flow.register(second)
        assert settlement.is_registered(flow.destination, second.intent_id)

    def test_proof_against_superseded_root_fails(self, flow):
        first = flow.create(1000)
        old_proof = intent_pool.commitment_proof(flow.source, first.commitment)
        flow.create(2000)
        flow.create(3000)
        flow.sync_commitments()
        with pytest.raises(AuthorizationFailure):
            flow.register(first, proof=old_proof)
        flow.register(first)

    def test_tampered_params_fail_proof(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        intent = intent_pool.get_intent(flow.source, params.intent_id)
        proof = intent_pool.commitment_proof(flow.source, intent.commitment)
        with pytest.raises(AuthorizationFailure):
            settlement.register_intent(
                flow.destination, flow.RELAYER, intent.intent_id, "0x" + "33" * 32,
                intent.dest_token, intent.dest_amount, flow.SOURCE_CHAIN, intent.deadline, proof,
            )

    def test_expired_intent_rejected(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.clock.advance(HOUR)
        with pytest.raises(StateConflict) as exc:
            flow.register(params)
        assert exc.value.code == ErrorCode.INTENT_EXPIRED

    def test_source_chain_must_differ(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        intent = intent_pool.get_intent(flow.source, params.intent_id)
        with pytest.raises(ValidationFailure) as exc:
            settlement.register_intent(
                flow.destination, flow.RELAYER, intent.intent_id, intent.commitment,
                intent.dest_token, intent.dest_amount, flow.DEST_CHAIN, intent.deadline, [],
            )
        assert exc.value.code == ErrorCode.INVALID_CHAIN

    def test_only_relayer_registers(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        with pytest.raises(AuthorizationFailure) as exc:
            settlement.register_intent(
                flow.destination, flow.SOLVER, params.intent_id, params.commitment,
                flow.TOKEN_DST, 1000, flow.SOURCE_CHAIN, flow.clock.now() + HOUR, [],
            )
        assert exc.value.code == ErrorCode.NOT_RELAYER


class TestFillIntent:
    """Tests for solver fills."""

    def test_fill_escrows_and_appends(self, flow):
        params = flow.through_fill(1000)

        assert settlement.intent_status(flow.destination, params.intent_id) == FillStatus.FILLED
        assert settlement.fill_tree_size(flow.destination) == 1
        assert ledger.escrow_balance(flow.destination, flow.TOKEN_DST) == 1000
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, flow.SOLVER) == flow.FUNDS - 1000
        fill = settlement.get_fill(flow.destination, params.intent_id)
        assert fill.solver == flow.SOLVER and not fill.claimed
        assert flow.destination.events.events_of(IntentFilled)[0].fill_index == 0

    def test_fill_order_is_tree_order(self, flow):
        ids = [flow.through_fill(1000 + i).intent_id for i in range(3)]
        tree = flow.destination.store.fill_tree
        assert [tree.index_of(i) for i in ids] == [0, 1, 2]

    def test_unregistered_fill_rejected(self, flow):
        params = flow.create(1000)
        with pytest.raises(StateConflict) as exc:
            settlement.fill_intent(
                flow.destination, flow.SOLVER, params.intent_id, params.commitment,
                flow.TOKEN_DST, 1000, flow.SOURCE_CHAIN,
            )
        assert exc.value.code == ErrorCode.NOT_REGISTERED

    @pytest.mark.parametrize("field,value,code", [
        ("amount", 1000.0, ErrorCode.INVALID_AMOUNT),
        ("amount", True, ErrorCode.INVALID_AMOUNT),
        ("source_chain", 11155111.0, ErrorCode.INVALID_CHAIN),
    ])
    def test_fill_inputs_must_be_integers(self, flow, field, value, code):
        params = flow.create(1000)
        flow.sync_commitments()
        registered = flow.register(params)
        args = {
            "commitment": registered.commitment,
            "token": registered.token,
            "amount": registered.amount,
            "source_chain": registered.source_chain,
        }
        args[field] = value
        with pytest.raises(ValidationFailure) as exc:
            settlement.fill_intent(flow.destination, flow.SOLVER, params.intent_id, **args)
        assert exc.value.code == code
        assert ledger.escrow_balance(flow.destination, flow.TOKEN_DST) == 0
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, flow.SOLVER) == flow.FUNDS
        assert settlement.get_fill(flow.destination, params.intent_id) is None

    @pytest.mark.parametrize("field,value", [
        ("amount", 1001),
        ("source_chain", 1),
        ("commitment", "0x" + "44" * 32),
    ])
    def test_mismatched_fill_rejected(self, flow, field, value):
        params = flow.create(1000)
        flow.sync_commitments()
        registered = flow.register(params)
        args = {
            "commitment": registered.commitment,
            "token": registered.token,
            "amount": registered.amount,
            "source_chain": registered.source_chain,
        }
        args[field] = value
        with pytest.raises(StateConflict) as exc:
            settlement.fill_intent(flow.destination, flow.SOLVER, params.intent_id, **args)
        assert exc.value.code == ErrorCode.PARAMS_MISMATCH
        assert ledger.escrow_balance(flow.destination, flow.TOKEN_DST) == 0

    def test_fill_after_deadline_rejected(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.register(params)
        flow.clock.advance(HOUR + 1)
        with pytest.raises(StateConflict) as exc:
            flow.fill(params)
        assert exc.value.code == ErrorCode.INTENT_EXPIRED

    def test_fill_at_deadline_accepted(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.register(params)
        flow.clock.advance(HOUR)
        assert flow.fill(params) == 0

    def test_second_fill_rejected(self, flow):
        params = flow.through_fill(1000)
        with pytest.raises(StateConflict) as exc:
            flow.fill(params, solver=flow.SOLVER_B)
        assert exc.value.code == ErrorCode.ALREADY_FILLED
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, flow.SOLVER_B) == flow.FUNDS

    def test_concurrent_fills_have_one_winner(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.register(params)

        barrier = threading.Barrier(2)
        outcomes = {}

        def attempt(solver):
            barrier.wait()
            try:
                flow.fill(params, solver=solver)
                outcomes[solver] = "filled"
            except StateConflict as exc:
                outcomes[solver] = exc.code

        threads = [threading.Thread(target=attempt, args=(s,)) for s in (flow.SOLVER, flow.SOLVER_B)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values(), key=str) == sorted(["filled", ErrorCode.ALREADY_FILLED], key=str)
        winner = settlement.get_fill(flow.destination, params.intent_id).solver
        loser = flow.SOLVER_B if winner == flow.SOLVER else flow.SOLVER
        assert outcomes[winner] == "filled"
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, loser) == flow.FUNDS
        assert settlement.fill_tree_size(flow.destination) == 1

    def test_pause_blocks_register_and_fill(self, flow):
        first = flow.create(1000)
        second = flow.create(2000)
        flow.sync_commitments()
        flow.register(first)
        ledger.pause(flow.destination, flow.OWNER)

        with pytest.raises(StateConflict) as exc:
            flow.register(second)
        assert exc.value.code == ErrorCode.PAUSED
        with pytest.raises(StateConflict) as exc:
            flow.fill(first)
        assert exc.value.code == ErrorCode.PAUSED


class TestClaimWithdrawal:
    """Tests for secret-reveal claims."""

    def test_claim_pays_recipient_minus_fee(self, flow):
        params = flow.through_fill(10_000)
        priv, recipient = flow.claim_key()
        assert flow.claim(params, priv, recipient) == 9_990

        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, recipient) == 9_990
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, flow.COLLECTOR) == 10
        assert ledger.escrow_balance(flow.destination, flow.TOKEN_DST) == 0
        assert settlement.is_nullifier_used(flow.destination, params.nullifier)
        assert settlement.intent_status(flow.destination, params.intent_id) == FillStatus.CLAIMED

        event = flow.destination.events.events_of(WithdrawalClaimed)[-1]
        assert event.recipient == recipient
        assert event.nullifier == params.nullifier
        assert params.secret not in event.to_json()

    def test_claim_allowed_while_paused(self, flow):
        params = flow.through_fill(1000)
        ledger.pause(flow.destination, flow.OWNER)
        assert flow.claim(params) == 999

    def test_claim_requires_fill(self, flow):
        params = flow.create(1000)
        flow.sync_commitments()
        flow.register(params)
        with pytest.raises(StateConflict) as exc:
            flow.claim(params)
        assert exc.value.code == ErrorCode.NOT_FILLED

    def test_claim_twice_fails(self, flow):
        params = flow.through_fill(1000)
        flow.claim(params)
        with pytest.raises(StateConflict) as exc:
            flow.claim(params)
        assert exc.value.code == ErrorCode.ALREADY_CLAIMED

    def test_nullifier_cannot_be_replayed(self, flow):
        first = flow.through_fill(1000)
        flow.claim(first)

        # A second intent whose own commitment opens with the first secret and nullifier.
        commitment = compute_commitment(first.secret, first.nullifier, 2000, flow.SOURCE_CHAIN)
        intent_id = generate_intent_id(flow.USER, flow.TOKEN_DST, 2000)
        intent_pool.create_intent(
            flow.source, flow.USER, intent_id, commitment,
            flow.TOKEN_SRC, 2000, flow.TOKEN_DST, 2000, flow.DEST_CHAIN, flow.USER,
        )
        second = SimpleNamespace(intent_id=intent_id)
        flow.sync_commitments()
        registered = flow.register(second)
        flow.fill(second)
        assert registered.commitment == compute_commitment(
            first.secret, first.nullifier, registered.amount, registered.source_chain,
        )

        priv, recipient = flow.claim_key()
        auth = flow.authorize(second, priv, recipient, nullifier=first.nullifier)
        with pytest.raises(StateConflict) as exc:
            settlement.claim_withdrawal(
                flow.destination, flow.RELAYER, intent_id, first.nullifier,
                recipient, first.secret, auth,
            )
        assert exc.value.code == ErrorCode.NULLIFIER_USED
        assert settlement.intent_status(flow.destination, intent_id) == FillStatus.FILLED
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, recipient) == 0

    def test_wrong_secret_rejected(self, flow):
        params = flow.through_fill(1000)
        priv, recipient = flow.claim_key()
        auth = flow.authorize(params, priv, recipient)
        with pytest.raises(AuthorizationFailure) as exc:
            settlement.claim_withdrawal(
                flow.destination, flow.RELAYER, params.intent_id, params.nullifier,
                recipient, generate_secret(), auth,
            )
        assert exc.value.code == ErrorCode.INVALID_COMMITMENT
        assert not settlement.is_nullifier_used(flow.destination, params.nullifier)

    def test_signature_must_match_recipient(self, flow):
        params = flow.through_fill(1000)
        priv, _ = flow.claim_key()
        _, other_recipient = flow.claim_key()
        auth = flow.authorize(params, priv, other_recipient)
        with pytest.raises(AuthorizationFailure) as exc:
            settlement.claim_withdrawal(
                flow.destination, flow.RELAYER, params.intent_id, params.nullifier,
                other_recipient, params.secret, auth,
            )
        assert exc.value.code == ErrorCode.INVALID_SIGNATURE

    def test_forged_signature_rejected(self, flow):
        params = flow.through_fill(1000)
        priv, recipient = flow.claim_key()
        auth = flow.authorize(params, priv, recipient)
        forged = ClaimAuthorization(public_key=auth.public_key, signature=auth.signature[:-4] + "AAAA")
        with pytest.raises(AuthorizationFailure) as exc:
            settlement.claim_withdrawal(
                flow.destination, flow.RELAYER, params.intent_id, params.nullifier,
                recipient, params.secret, forged,
            )
        assert exc.value.code == ErrorCode.INVALID_SIGNATURE

    def test_only_relayer_submits_claims(self, flow):
        params = flow.through_fill(1000)
        priv, recipient = flow.claim_key()
        auth = flow.authorize(params, priv, recipient)
        with pytest.raises(AuthorizationFailure) as exc:
            settlement.claim_withdrawal(
                flow.destination, recipient, params.intent_id, params.nullifier,
                recipient, params.secret, auth,
            )
        assert exc.value.code == ErrorCode.NOT_RELAYER

    def test_failed_payout_rolls_back_claim(self, flow):
        params = flow.through_fill(10_000)
        priv, recipient = flow.claim_key()
        events_before = len(flow.destination.events)
        collector = flow.COLLECTOR

        flow.destination.transfer_guard = lambda token, src, dst, amount: dst != collector
        with pytest.raises(CustodyFailure) as exc:
            flow.claim(params, priv, recipient)
        assert exc.value.code == ErrorCode.TRANSFER_FAILED

        assert not settlement.get_fill(flow.destination, params.intent_id).claimed
        assert not settlement.is_nullifier_used(flow.destination, params.nullifier)
        assert ledger.balance_of(flow.destination, flow.TOKEN_DST, recipient) == 0
        assert len(flow.destination.events) == events_before

        flow.destination.transfer_guard = None
        assert flow.claim(params, priv, recipient) == 9_990
