"""Pydantic models for API requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

# =============================================================================
# Shared
# =============================================================================

class AmountModel(BaseModel):
    """A quantity of one asset."""
    value: Decimal
    denom: str


class ErrorResponse(BaseModel):
    """Error body for loan operations."""
    error: str  # machine-readable kind, e.g. "already_claimed"
    message: str


# =============================================================================
# Loan Models
# =============================================================================

class LoanCreate(BaseModel):
    """Request to lock collateral and open a loan."""
    payment_id: str = Field(..., min_length=1, max_length=64)
    requested_amount: Decimal = Field(..., gt=0, description="USDC to receive on the target chain")
    recipient_address: str = Field(..., min_length=1, max_length=128)
    depositor: str = Field(..., min_length=1, max_length=128)
    target_chain: str | None = None  # Defaults to the configured chain


class LoanResponse(BaseModel):
    """A loan request."""
    id: str
    status: Literal["pending", "claimed", "completed", "failed"]
    collateral_amount: AmountModel
    requested_amount: AmountModel
    recipient_address: str
    depositor: str
    target_chain: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    failure_reason: str | None = None
    refunded_at: datetime | None = None


class LoanListResponse(BaseModel):
    """Page of loan requests, newest first."""
    loans: list[LoanResponse]
    total: int
    limit: int
    offset: int


# =============================================================================
# Claim Models
# =============================================================================

class ClaimCreate(BaseModel):
    """A solver's claim that it paid out a loan."""
    foreign_tx_reference: str = Field(..., min_length=1, max_length=128)
    solver_identity: str = Field(..., min_length=1, max_length=128)


class ClaimResponse(BaseModel):
    """A fulfillment claim and its verification progress."""
    id: str
    request_id: str
    foreign_tx_reference: str
    solver_identity: str
    claim_status: Literal["pending", "confirmed", "failed"]
    claimed_at: datetime | None = None
    resolved_at: datetime | None = None
    verification_attempts: int = 0
    last_error: str | None = None


class TransitionResponse(BaseModel):
    """One audit log entry."""
    id: str
    request_id: str
    from_status: str | None
    to_status: str
    actor: str
    reason: str | None = None
    created_at: datetime | None = None


class HistoryResponse(BaseModel):
    """Full transition history of a loan."""
    request_id: str
    transitions: list[TransitionResponse]


# =============================================================================
# Refund Models
# =============================================================================

class RefundResponse(BaseModel):
    """Collateral returned to the depositor."""
    request_id: str
    recipient: str
    amount: AmountModel
    released_at: datetime


# =============================================================================
# Maintenance Models
# =============================================================================

class StaleClaimResponse(BaseModel):
    """A claim unresolved for longer than the allowed age."""
    request_id: str
    foreign_tx_reference: str
    solver_identity: str
    claimed_at: datetime | None
    age_seconds: int
    verification_attempts: int
    last_error: str | None = None


class UnreleasedEscrowResponse(BaseModel):
    """A completed loan whose collateral has not reached the solver."""
    request_id: str
    held_asset_id: str
    amount: AmountModel
    held_since: datetime | None


class StaleClaimsResponse(BaseModel):
    """Stale claim report."""
    claims: list[StaleClaimResponse]
    total: int
    unreleased: list[UnreleasedEscrowResponse] = []
    max_age_minutes: float
    checked_at: datetime


# =============================================================================
# Dev Ledger Models
# =============================================================================

class PaymentCreate(BaseModel):
    """Mint a collateral payment (debug only)."""
    amount: Decimal = Field(..., gt=0)
    denom: str = "eth"


class PaymentResponse(BaseModel):
    """A live collateral payment."""
    payment_id: str
    amount: AmountModel
