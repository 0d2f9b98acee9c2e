import os
import pathlib
import sys
from typing import List, Optional

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import shadowswap`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless SHADOWSWAP_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('SHADOWSWAP_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SHADOWSWAP_RUN_SLOW=1 to enable'))


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


class Flow:
    """Two funded ledgers sharing a manual clock, plus helpers for each protocol step."""

    OWNER = addr(1)
    RELAYER = addr(2)
    COLLECTOR = addr(3)
    USER = addr(10)
    SOLVER = addr(11)
    SOLVER_B = addr(12)
    STRANGER = addr(13)
    TOKEN_SRC = addr(100)
    TOKEN_DST = addr(200)
    SOURCE_CHAIN = 11155111
    DEST_CHAIN = 5003
    FUNDS = 10 ** 9

    def __init__(self):
        from shadowswap import ledger
        from shadowswap.intent_pool import SourceLedger
        from shadowswap.settlement import DestinationLedger

        self.clock = ledger.ManualClock()
        self.source = SourceLedger(self.SOURCE_CHAIN, self.OWNER, self.RELAYER, self.COLLECTOR, clock=self.clock)
        self.destination = DestinationLedger(self.DEST_CHAIN, self.OWNER, self.RELAYER, self.COLLECTOR, clock=self.clock)

        ledger.add_token(self.source, self.OWNER, self.TOKEN_SRC, 1, 10 ** 12, 18)
        ledger.add_token(self.destination, self.OWNER, self.TOKEN_DST, 1, 10 ** 12, 18)
        ledger.mint(self.source, self.TOKEN_SRC, self.USER, self.FUNDS)
        for solver in (self.SOLVER, self.SOLVER_B):
            ledger.mint(self.destination, self.TOKEN_DST, solver, self.FUNDS)

    # -- source side ---------------------------------------------------------

    def create(self, amount: int = 1000, deadline: Optional[int] = None, dest_amount: Optional[int] = None):
        from shadowswap import intent_pool
        from shadowswap.field import generate_privacy_params

        dest_amount = amount if dest_amount is None else dest_amount
        params = generate_privacy_params(self.USER, self.TOKEN_DST, dest_amount, self.SOURCE_CHAIN)
        intent_pool.create_intent(
            self.source, self.USER, params.intent_id, params.commitment,
            self.TOKEN_SRC, amount, self.TOKEN_DST, dest_amount, self.DEST_CHAIN, self.USER,
            deadline=deadline,
        )
        return params

    def sync_commitments(self) -> str:
        from shadowswap import intent_pool, settlement

        root = intent_pool.commitment_root(self.source)
        settlement.sync_source_root(self.destination, self.RELAYER, self.SOURCE_CHAIN, root)
        return root

    def register(self, params, proof: Optional[List[str]] = None):
        from shadowswap import intent_pool, settlement

        intent = intent_pool.get_intent(self.source, params.intent_id)
        if proof is None:
            proof = intent_pool.commitment_proof(self.source, intent.commitment)
        return settlement.register_intent(
            self.destination, self.RELAYER, intent.intent_id, intent.commitment,
            intent.dest_token, intent.dest_amount, self.SOURCE_CHAIN, intent.deadline, proof,
        )

    # -- destination side ----------------------------------------------------

    def fill(self, params, solver: Optional[str] = None) -> int:
        from shadowswap import settlement

        registered = settlement.get_intent_params(self.destination, params.intent_id)
        return settlement.fill_intent(
            self.destination, solver or self.SOLVER, params.intent_id, registered.commitment,
            registered.token, registered.amount, registered.source_chain,
        )

    def sync_fills(self) -> str:
        from shadowswap import intent_pool, settlement

        root = settlement.fill_root(self.destination)
        intent_pool.sync_dest_root(self.source, self.RELAYER, self.DEST_CHAIN, root)
        return root

    def settle(self, params, solver: Optional[str] = None, proof: Optional[List[str]] = None) -> int:
        from shadowswap import intent_pool, settlement

        if proof is None:
            proof = settlement.fill_proof(self.destination, params.intent_id)
        return intent_pool.settle_intent(self.source, self.RELAYER, params.intent_id, solver or self.SOLVER, proof)

    def claim_key(self):
        from shadowswap.claims import generate_ed25519_jwk, load_private_key_from_jwk

        return load_private_key_from_jwk(generate_ed25519_jwk())

    def authorize(self, params, private_key, recipient: str, nullifier: Optional[str] = None):
        from shadowswap.claims import sign_claim

        return sign_claim(private_key, self.DEST_CHAIN, params.intent_id, nullifier or params.nullifier, recipient)

    def claim(self, params, private_key=None, recipient: Optional[str] = None) -> int:
        from shadowswap import settlement

        if private_key is None:
            private_key, recipient = self.claim_key()
        auth = self.authorize(params, private_key, recipient)
        return settlement.claim_withdrawal(
            self.destination, self.RELAYER, params.intent_id, params.nullifier, recipient, params.secret, auth,
        )

    def through_fill(self, amount: int = 1000, **kwargs):
        """Create, sync, register and fill one intent; returns its privacy params."""
        params = self.create(amount, **kwargs)
        self.sync_commitments()
        self.register(params)
        self.fill(params)
        return params


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch):
    """Fresh config, default hash primitive and no SHADOWSWAP_* env vars per test."""
    from shadowswap.config import ConfigManager
    from shadowswap.field import set_hash_primitive

    for name in list(os.environ):
        if name.startswith("SHADOWSWAP_"):
            monkeypatch.delenv(name)
    ConfigManager.reset()
    yield
    ConfigManager.reset()
    set_hash_primitive(None)


@pytest.fixture
def flow() -> Flow:
    return Flow()


@pytest.fixture
def clock(flow):
    return flow.clock


@pytest.fixture
def source(flow):
    return flow.source


@pytest.fixture
def destination(flow):
    return flow.destination
