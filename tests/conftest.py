"""
Pytest fixtures and test configuration for zeromiles tests.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from zeromiles.config import LoanConfig
from zeromiles.engine import EscrowEngine
from zeromiles.ledger import InMemoryLedger
from zeromiles.storage import InMemoryRequestStore, SQLiteRequestStore
from zeromiles.types import Amount
from zeromiles.verifier.base import VerificationQuery, VerificationResult, VerificationStatus

# Valid bech32 address (checksum computed per BIP-173)
USER_OSMO = "osmo1pvc9275lcn5suv6c0k3v0mq3xedcpfw203mumf"

OSMO_TX = "A" * 64


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class ScriptedVerifier:
    """Verifier that replays a script of outcomes.

    Each entry is a VerificationStatus (returned as a result) or an exception
    instance (raised). The last entry repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script) or [VerificationStatus.PENDING]
        self.queries: List[VerificationQuery] = []

    async def verify(self, query: VerificationQuery) -> VerificationResult:
        self.queries.append(query)
        index = min(len(self.queries) - 1, len(self.script) - 1)
        outcome = self.script[index]
        if isinstance(outcome, Exception):
            raise outcome
        return VerificationResult(
            status=outcome,
            tx_reference=query.tx_reference,
            chain=query.chain,
            error="payout reverted" if outcome == VerificationStatus.FAILED else None,
            error_code="TX_FAILED" if outcome == VerificationStatus.FAILED else None,
        )

    @property
    def calls(self) -> int:
        return len(self.queries)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Fast-polling configuration for tests."""
    return LoanConfig(poll_interval=0.0, max_claim_age=timedelta(minutes=30))


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def store():
    return InMemoryRequestStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteRequestStore(db_path=tmp_path / "loans.db")


@pytest.fixture
def verifier():
    return ScriptedVerifier(VerificationStatus.PENDING)


@pytest.fixture
def engine(store, ledger, verifier, config, clock):
    return EscrowEngine(store=store, ledger=ledger, verifier=verifier, config=config, clock=clock)


@pytest.fixture
def make_engine(store, ledger, config, clock):
    """Factory: engine whose verifier replays the given script."""

    def _make(*script, **config_overrides):
        verifier = ScriptedVerifier(*script)
        cfg = replace(config, **config_overrides) if config_overrides else config
        return EscrowEngine(store=store, ledger=ledger, verifier=verifier, config=cfg, clock=clock)

    return _make


@pytest.fixture
def eth_payment(ledger):
    """A live 1.0 ETH collateral payment."""
    return ledger.mint(Amount(Decimal("1.0"), "eth"))


@pytest.fixture
def usdc_1000():
    return Amount(Decimal("1000"), "usdc")


@pytest.fixture
def user_osmo():
    """Recipient address on Osmosis."""
    return USER_OSMO


@pytest.fixture
def osmo_tx():
    return OSMO_TX
