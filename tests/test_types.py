"""Tests for shared record types and the request state graph."""

from decimal import Decimal

import pytest

from zeromiles.types import (
    Amount,
    ClaimStatus,
    FulfillmentClaim,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
    TERMINAL_STATUSES,
    can_transition,
    new_id,
    require_transition,
)


def make_request(**kwargs) -> LoanRequest:
    defaults = dict(
        id=new_id(),
        collateral_amount=Amount("1.0", "eth"),
        requested_amount=Amount("1000", "usdc"),
        recipient_address="osmo1pvc9275lcn5suv6c0k3v0mq3xedcpfw203mumf",
        depositor="alice",
        target_chain="osmosis",
    )
    defaults.update(kwargs)
    return LoanRequest(**defaults)


class TestAmount:
    def test_coerces_to_decimal_without_float_noise(self):
        amount = Amount(0.1, "ETH")
        assert amount.value == Decimal("0.1")
        assert amount.denom == "eth"

    def test_rejects_negative(self):
        with pytest.raises(ValueError, match="negative"):
            Amount("-1", "eth")

    def test_rejects_empty_denom(self):
        with pytest.raises(ValueError, match="denom"):
            Amount("1", "  ")

    def test_rejects_garbage_value(self):
        with pytest.raises(ValueError, match="Invalid amount"):
            Amount("lots", "usdc")

    @pytest.mark.parametrize("value", ["Infinity", "-Infinity", "NaN", "sNaN", float("inf")])
    def test_rejects_non_finite(self, value):
        with pytest.raises(ValueError, match="finite"):
            Amount(value, "usdc")

    def test_base_units(self):
        assert Amount("1000", "usdc").to_base_units(6) == 1_000_000_000
        assert Amount("1.5", "usdc").to_base_units(6) == 1_500_000
        assert Amount("1000.000001", "usdc").to_base_units(6) == 1_000_000_001

    @pytest.mark.parametrize("value", ["0.0000001", "1000.0000009"])
    def test_base_units_never_round(self, value):
        amount = Amount(value, "usdc")
        assert not amount.fits_decimals(6)
        with pytest.raises(ValueError, match="more than 6 decimal places"):
            amount.to_base_units(6)

    def test_trailing_zeros_fit(self):
        assert Amount("12.500000000", "usdc").fits_decimals(6)
        assert Amount("12.500000000", "usdc").to_base_units(6) == 12_500_000

    def test_from_base_units(self):
        assert Amount.from_base_units(5_000_000, "usdc", 6) == Amount("5", "usdc")

    def test_frozen(self):
        amount = Amount("1", "eth")
        with pytest.raises(AttributeError):
            amount.value = Decimal("2")

    def test_dict_form(self):
        amount = Amount("12.50", "usdc")
        assert amount.to_dict() == {"value": "12.50", "denom": "usdc"}
        assert Amount.from_dict(amount.to_dict()) == amount
        assert str(amount) == "12.50 usdc"


class TestLoanRequest:
    def test_amounts_are_write_once(self):
        request = make_request()
        with pytest.raises(AttributeError, match="immutable"):
            request.collateral_amount = Amount("2.0", "eth")
        with pytest.raises(AttributeError, match="immutable"):
            request.requested_amount = Amount("1", "usdc")

    def test_status_is_mutable(self):
        request = make_request()
        request.status = RequestStatus.CLAIMED.value
        assert request.status == "claimed"

    def test_enum_status_normalized(self):
        request = make_request(status=RequestStatus.COMPLETED)
        assert request.status == "completed"
        assert request.is_terminal

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            make_request(status="refunded")

    def test_to_dict(self):
        data = make_request().to_dict()
        assert data["status"] == "pending"
        assert data["collateral_amount"] == {"value": "1.0", "denom": "eth"}
        assert data["refunded_at"] is None


class TestTransitions:
    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "claimed"),
            ("pending", "failed"),
            ("claimed", "completed"),
            ("claimed", "failed"),
        ],
    )
    def test_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("pending", "completed"),
            ("claimed", "pending"),
            ("completed", "failed"),
            ("failed", "pending"),
            ("failed", "claimed"),
        ],
    )
    def test_forbidden(self, from_status, to_status):
        assert not can_transition(from_status, to_status)

    def test_require_transition(self):
        require_transition(RequestStatus.CLAIMED, "completed")
        with pytest.raises(ValueError, match="completed -> failed"):
            require_transition(RequestStatus.COMPLETED, RequestStatus.FAILED)

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {RequestStatus.COMPLETED, RequestStatus.FAILED}


class TestClaimAndTransitionRecords:
    def test_claim_defaults(self):
        claim = FulfillmentClaim(
            id="c1", request_id="r1", foreign_tx_reference="ABC", solver_identity="solver"
        )
        assert claim.claim_status == ClaimStatus.PENDING.value
        assert claim.verification_attempts == 0
        assert claim.to_dict()["claimed_at"] is None

    def test_transition_gets_unique_id(self):
        a = RequestStateTransition(request_id="r1", from_status=None, to_status="pending", actor="x")
        b = RequestStateTransition(request_id="r1", from_status=None, to_status="pending", actor="x")
        assert a.id != b.id
