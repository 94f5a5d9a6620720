"""Pytest configuration and fixtures."""

import os
import secrets
import tempfile
import time

import pytest

# Unique operator token per test run
_TEST_OPERATOR_TOKEN = f"test-only-{secrets.token_urlsafe(32)}"

# Must be set before the app (and its settings) are imported
os.environ.setdefault("ZEROMILES_DEBUG", "true")
os.environ.setdefault("ZEROMILES_OPERATOR_TOKEN", _TEST_OPERATOR_TOKEN)
os.environ.setdefault("ZEROMILES_POLL_INTERVAL", "0.01")
os.environ.setdefault("ZEROMILES_HOME", tempfile.mkdtemp(prefix="zeromiles-test-"))

from app.config import get_settings  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from zeromiles.verifier import VerificationResult, VerificationStatus  # noqa: E402

USER_OSMO = "osmo1pvc9275lcn5suv6c0k3v0mq3xedcpfw203mumf"
OSMO_TX = "A" * 64


class StubVerifier:
    """Verifier whose answer the test flips by setting ``status``."""

    chains = ["osmosis"]

    def __init__(self):
        self.status = VerificationStatus.PENDING
        self.calls = 0

    async def verify(self, query):
        self.calls += 1
        failed = self.status == VerificationStatus.FAILED
        return VerificationResult(
            status=self.status,
            tx_reference=query.tx_reference,
            chain=query.chain,
            error="payout reverted" if failed else None,
            error_code="TX_FAILED" if failed else None,
        )


@pytest.fixture
def verifier():
    return StubVerifier()


@pytest.fixture
def client(tmp_path, monkeypatch, verifier):
    """Test client with a running engine over a fresh database."""
    monkeypatch.setenv("ZEROMILES_DATABASE_PATH", str(tmp_path / "loans.db"))
    get_settings.cache_clear()
    monkeypatch.setattr("app.database.build_verifier", lambda config: verifier)
    limiter.reset()

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()


@pytest.fixture
def operator_headers():
    return {"Authorization": f"Bearer {get_settings().operator_token}"}


@pytest.fixture
def mint(client):
    """Mint a collateral payment through the debug faucet."""

    def _mint(amount="1.0", denom="eth"):
        response = client.post("/ledger/payments", json={"amount": amount, "denom": denom})
        assert response.status_code == 201, response.text
        return response.json()["payment_id"]

    return _mint


@pytest.fixture
def open_loan(client, mint):
    """Lock 1 ETH against 1000 USDC and return the loan ID."""

    def _open(**overrides):
        body = {
            "payment_id": mint(),
            "requested_amount": "1000",
            "recipient_address": USER_OSMO,
            "depositor": "alice",
        }
        body.update(overrides)
        response = client.post("/loans", json=body)
        assert response.status_code == 201, response.text
        return response.json()["id"]

    return _open


def wait_for_status(client, loan_id, status, timeout=3.0):
    """Poll the loan until it reaches ``status`` or the timeout passes."""
    deadline = time.monotonic() + timeout
    while True:
        loan = client.get(f"/loans/{loan_id}").json()
        if loan["status"] == status or time.monotonic() > deadline:
            return loan
        time.sleep(0.05)


@pytest.fixture
def wait_for():
    return wait_for_status
