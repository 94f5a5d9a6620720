"""Tests for operator-only routes: refunds and stale claim reports."""

import time
from decimal import Decimal

from app.config import get_settings

from zeromiles.errors import LedgerError
from zeromiles.verifier import VerificationStatus

OSMO_TX = "A" * 64


class TestOperatorAuth:
    def test_refund_requires_token(self, client, open_loan):
        loan_id = open_loan()

        response = client.post(f"/loans/{loan_id}/refund")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing operator token"

    def test_refund_rejects_wrong_token(self, client, open_loan):
        loan_id = open_loan()

        response = client.post(
            f"/loans/{loan_id}/refund", headers={"Authorization": "Bearer not-the-token"}
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid operator token"
        assert client.get(f"/loans/{loan_id}").json()["status"] == "pending"

    def test_unconfigured_operator_access_forbidden(self, client, open_loan, monkeypatch):
        loan_id = open_loan()
        monkeypatch.setenv("ZEROMILES_OPERATOR_TOKEN", "")
        get_settings.cache_clear()

        response = client.post(
            f"/loans/{loan_id}/refund", headers={"Authorization": "Bearer anything"}
        )

        assert response.status_code == 403


class TestRefund:
    def test_refund_pending_loan(self, client, open_loan, operator_headers):
        loan_id = open_loan()

        response = client.post(f"/loans/{loan_id}/refund", headers=operator_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["request_id"] == loan_id
        assert data["recipient"] == "alice"
        assert data["amount"] == {"value": "1.0", "denom": "eth"}

        loan = client.get(f"/loans/{loan_id}").json()
        assert loan["status"] == "failed"
        assert loan["failure_reason"] == "cancelled by operator"
        assert loan["refunded_at"] is not None
        assert client.app.state.ledger.balance_of("alice", "eth") == Decimal("1.0")

    def test_refund_twice_conflicts(self, client, open_loan, operator_headers):
        loan_id = open_loan()
        assert client.post(f"/loans/{loan_id}/refund", headers=operator_headers).status_code == 200

        response = client.post(f"/loans/{loan_id}/refund", headers=operator_headers)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "invalid_state"
        assert client.app.state.ledger.balance_of("alice", "eth") == Decimal("1.0")

    def test_claimed_loan_cannot_be_refunded(self, client, open_loan, operator_headers):
        loan_id = open_loan()
        client.post(
            f"/loans/{loan_id}/claim",
            json={"foreign_tx_reference": OSMO_TX, "solver_identity": "solver-1"},
        )

        response = client.post(f"/loans/{loan_id}/refund", headers=operator_headers)

        assert response.status_code == 409
        assert "Cannot refund" in response.json()["detail"]["message"]

    def test_refund_unknown_loan(self, client, operator_headers):
        response = client.post("/loans/does-not-exist/refund", headers=operator_headers)

        assert response.status_code == 404


class TestStaleClaims:
    def test_requires_operator(self, client):
        response = client.get("/maintenance/stale-claims")

        assert response.status_code == 401

    def test_fresh_claims_are_not_stale(self, client, open_loan, operator_headers):
        loan_id = open_loan()
        client.post(
            f"/loans/{loan_id}/claim",
            json={"foreign_tx_reference": OSMO_TX, "solver_identity": "solver-1"},
        )

        response = client.get("/maintenance/stale-claims", headers=operator_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["claims"] == []
        assert data["total"] == 0
        assert data["unreleased"] == []
        assert data["max_age_minutes"] == 60

    def test_reports_claims_older_than_override(self, client, open_loan, operator_headers):
        pending_id = open_loan()
        claimed_id = open_loan()
        client.post(
            f"/loans/{claimed_id}/claim",
            json={"foreign_tx_reference": OSMO_TX, "solver_identity": "solver-1"},
        )
        time.sleep(0.05)

        response = client.get(
            "/maintenance/stale-claims",
            params={"max_age_minutes": 0.0001},
            headers=operator_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        stale = data["claims"][0]
        assert stale["request_id"] == claimed_id
        assert stale["request_id"] != pending_id
        assert stale["foreign_tx_reference"] == OSMO_TX
        assert stale["solver_identity"] == "solver-1"

    def test_reports_completed_loans_still_holding_collateral(
        self, client, open_loan, operator_headers, verifier, wait_for, monkeypatch
    ):
        def refuse(held, recipient):
            raise LedgerError("ledger offline")

        monkeypatch.setattr(client.app.state.ledger, "release_collateral", refuse)
        verifier.status = VerificationStatus.SUCCESS
        loan_id = open_loan()
        client.post(
            f"/loans/{loan_id}/claim",
            json={"foreign_tx_reference": OSMO_TX, "solver_identity": "solver-1"},
        )
        assert wait_for(client, loan_id, "completed")["status"] == "completed"

        response = client.get("/maintenance/stale-claims", headers=operator_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 0
        assert [u["request_id"] for u in data["unreleased"]] == [loan_id]
        assert data["unreleased"][0]["amount"] == {"value": "1.0", "denom": "eth"}
        assert client.app.state.ledger.balance_of("solver-1", "eth") == Decimal(0)

    def test_rejects_non_positive_age(self, client, operator_headers):
        response = client.get(
            "/maintenance/stale-claims",
            params={"max_age_minutes": 0},
            headers=operator_headers,
        )

        assert response.status_code == 422
