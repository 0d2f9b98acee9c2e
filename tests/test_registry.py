"""
Token registry and ledger administration tests.
"""

import pytest

from shadowswap import intent_pool, ledger
from shadowswap.events import RoleUpdated, TokenAdded, TokenConfigUpdated, TokenRemoved
from shadowswap.hardening import (
    AuthorizationFailure,
    ErrorCode,
    StateConflict,
    ValidationFailure,
)
from shadowswap.registry import TokenRegistry


def _token(n: int) -> str:
    return "0x" + f"{n:040x}"


class TestTokenRegistry:
    """Tests for the per-ledger allow-list."""

    def test_add_and_check_amount(self):
        reg = TokenRegistry()
        reg.add(_token(1), 10, 100, 6)
        assert reg.is_supported(_token(1))
        assert reg.check_amount(_token(1), 10) == _token(1)
        assert reg.check_amount(_token(1), 100) == _token(1)

    def test_add_twice_fails(self):
        reg = TokenRegistry()
        reg.add(_token(1), 10, 100, 6)
        with pytest.raises(StateConflict) as exc:
            reg.add(_token(1), 10, 100, 6)
        assert exc.value.code == ErrorCode.ALREADY_SUPPORTED

    def test_null_token_rejected(self):
        reg = TokenRegistry()
        with pytest.raises(ValidationFailure) as exc:
            reg.add("0x" + "0" * 40, 10, 100, 6)
        assert exc.value.code == ErrorCode.INVALID_TOKEN

    @pytest.mark.parametrize("lo,hi", [(0, 100), (10, 0), (101, 100)])
    def test_invalid_bounds(self, lo, hi):
        reg = TokenRegistry()
        with pytest.raises(ValidationFailure) as exc:
            reg.add(_token(1), lo, hi, 6)
        assert exc.value.code == ErrorCode.INVALID_TOKEN_CONFIG

    def test_amount_out_of_bounds(self):
        reg = TokenRegistry()
        reg.add(_token(1), 10, 100, 6)
        for amount in (9, 101):
            with pytest.raises(ValidationFailure) as exc:
                reg.check_amount(_token(1), amount)
            assert exc.value.code == ErrorCode.AMOUNT_OUT_OF_BOUNDS

    def test_unsupported_token(self):
        reg = TokenRegistry()
        with pytest.raises(ValidationFailure) as exc:
            reg.check_amount(_token(9), 50)
        assert exc.value.code == ErrorCode.TOKEN_NOT_SUPPORTED

    def test_update_requires_support(self):
        reg = TokenRegistry()
        with pytest.raises(ValidationFailure):
            reg.update(_token(1), 1, 2, 6)
        reg.add(_token(1), 10, 100, 6)
        reg.update(_token(1), 1, 1000, 8)
        assert reg.get(_token(1)).max_amount == 1000
        assert reg.get(_token(1)).decimals == 8
        with pytest.raises(ValidationFailure):
            reg.update(_token(1), 5, 1, 8)

    def test_remove_compacts_list(self):
        reg = TokenRegistry()
        for i in range(1, 5):
            reg.add(_token(i), 1, 10, 18)
        reg.remove(_token(2))
        assert reg.tokens == [_token(1), _token(4), _token(3)]
        assert not reg.is_supported(_token(2))
        assert reg.get(_token(2)).supported is False

        reg.remove(_token(3))
        assert reg.tokens == [_token(1), _token(4)]
        reg.remove(_token(1))
        reg.remove(_token(4))
        assert reg.tokens == []

    def test_readd_after_remove(self):
        reg = TokenRegistry()
        reg.add(_token(1), 1, 10, 18)
        reg.remove(_token(1))
        reg.add(_token(1), 2, 20, 18)
        assert reg.tokens == [_token(1)]
        assert reg.get(_token(1)).min_amount == 2


class TestLedgerAdministration:
    """Owner-only operations shared by both ledgers."""

    def test_token_admin_is_owner_only(self, flow):
        with pytest.raises(AuthorizationFailure) as exc:
            ledger.add_token(flow.source, flow.STRANGER, _token(7), 1, 10, 18)
        assert exc.value.code == ErrorCode.NOT_OWNER

    def test_token_admin_emits_events(self, flow):
        ledger.add_token(flow.source, flow.OWNER, _token(7), 1, 10, 18)
        ledger.update_token_config(flow.source, flow.OWNER, _token(7), 1, 20, 18)
        ledger.remove_token(flow.source, flow.OWNER, _token(7))
        kinds = [type(e) for e in flow.source.events.events_of(TokenAdded, TokenConfigUpdated, TokenRemoved)]
        assert kinds == [TokenAdded, TokenAdded, TokenConfigUpdated, TokenRemoved]

    def test_removed_token_keeps_escrow_refundable(self, flow):
        params = flow.create(500)
        ledger.remove_token(flow.source, flow.OWNER, flow.TOKEN_SRC)

        with pytest.raises(ValidationFailure) as exc:
            flow.create(500)
        assert exc.value.code == ErrorCode.TOKEN_NOT_SUPPORTED

        intent_pool.cancel_intent(flow.source, flow.USER, params.intent_id)
        assert ledger.balance_of(flow.source, flow.TOKEN_SRC, flow.USER) == flow.FUNDS

    def test_set_relayer(self, flow):
        new_relayer = _token(55)
        ledger.set_relayer(flow.source, flow.OWNER, new_relayer)
        assert flow.source.store.relayer == new_relayer
        event = flow.source.events.events_of(RoleUpdated)[-1]
        assert event.previous == flow.RELAYER and event.current == new_relayer

        with pytest.raises(AuthorizationFailure) as exc:
            intent_pool.sync_dest_root(flow.source, flow.RELAYER, flow.DEST_CHAIN, "0x" + "01" * 32)
        assert exc.value.code == ErrorCode.NOT_RELAYER

    def test_set_fee_bps_bounds(self, flow):
        ledger.set_fee_bps(flow.source, flow.OWNER, 1000)
        assert flow.source.store.fee_bps == 1000
        with pytest.raises(ValidationFailure) as exc:
            ledger.set_fee_bps(flow.source, flow.OWNER, 1001)
        assert exc.value.code == ErrorCode.INVALID_FEE_CONFIG
        assert flow.source.store.fee_bps == 1000

    def test_admin_actions_are_audited(self, flow):
        ledger.pause(flow.source, flow.OWNER)
        ledger.unpause(flow.source, flow.OWNER)
        actions = [e.action for e in flow.source.audit.entries]
        assert actions[-2:] == ["pause", "unpause"]
        assert flow.source.audit.verify_chain()

    def test_set_fee_collector_redirects_fees(self, flow):
        new_collector = _token(77)
        ledger.set_fee_collector(flow.source, flow.OWNER, new_collector)
        params = flow.through_fill(10_000)
        flow.sync_fills()
        flow.settle(params)
        assert ledger.balance_of(flow.source, flow.TOKEN_SRC, new_collector) == 10
        assert ledger.balance_of(flow.source, flow.TOKEN_SRC, flow.COLLECTOR) == 0

    def test_read_views(self, flow):
        assert ledger.supported_tokens(flow.source) == [flow.TOKEN_SRC]
        assert ledger.token_config(flow.source, flow.TOKEN_SRC).max_amount == 10 ** 12
        assert ledger.token_config(flow.source, _token(9)) is None
        assert not ledger.is_paused(flow.source)
        ledger.pause(flow.source, flow.OWNER)
        assert ledger.is_paused(flow.source)

    def test_custody_total_is_conserved(self, flow):
        before = flow.source.store.balances.total(flow.TOKEN_SRC)
        flow.create(1000)
        assert flow.source.store.balances.total(flow.TOKEN_SRC) == before == flow.FUNDS
