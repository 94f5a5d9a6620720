"""
Shared record types for zeromiles.

These dataclasses are the vocabulary between the engine, the stores and the
HTTP surface. The engine is the only writer; stores persist them verbatim.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get current timestamp in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a collision-resistant record identifier."""
    return str(uuid.uuid4())


def to_decimal(value: Any) -> Decimal:
    """Coerce ints, floats and strings to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


# === Enums ===


class RequestStatus(str, Enum):
    """Lifecycle status of a loan request."""

    PENDING = "pending"  # Collateral held, no claim yet
    CLAIMED = "claimed"  # A solver claimed fulfillment, verification running
    COMPLETED = "completed"  # Payout verified, collateral released to solver
    FAILED = "failed"  # Payout failed verification, or request cancelled


class ClaimStatus(str, Enum):
    """Verification status of a fulfillment claim."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# Forward-only transition graph. pending -> failed exists for depositor cancellation.
VALID_REQUEST_TRANSITIONS: Dict[RequestStatus, frozenset] = {
    RequestStatus.PENDING: frozenset({RequestStatus.CLAIMED, RequestStatus.FAILED}),
    RequestStatus.CLAIMED: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED})


def can_transition(from_status: str, to_status: str) -> bool:
    """Check if a status transition is valid."""
    return RequestStatus(to_status) in VALID_REQUEST_TRANSITIONS[RequestStatus(from_status)]


def require_transition(from_status: str, to_status: str) -> None:
    """Raise ValueError unless ``from_status -> to_status`` is an edge of the graph."""
    if not can_transition(from_status, to_status):
        raise ValueError(
            f"Invalid status transition: {RequestStatus(from_status).value} -> "
            f"{RequestStatus(to_status).value}"
        )


# === Records ===


@dataclass(frozen=True)
class Amount:
    """A quantity of one asset kind."""

    value: Decimal
    denom: str

    def __post_init__(self):
        object.__setattr__(self, "value", to_decimal(self.value))
        if not self.value.is_finite():
            raise ValueError(f"Amount must be finite, got {self.value}")
        if not self.denom or not self.denom.strip():
            raise ValueError("Amount denom cannot be empty")
        object.__setattr__(self, "denom", self.denom.strip().lower())
        if self.value < 0:
            raise ValueError("Amount cannot be negative")

    @property
    def is_zero(self) -> bool:
        return self.value == 0

    def fits_decimals(self, decimals: int) -> bool:
        """True if the value needs no more than ``decimals`` fractional digits."""
        scaled = self.value.scaleb(decimals)
        return scaled == scaled.to_integral_value()

    def to_base_units(self, decimals: int) -> int:
        """Convert to integer base units (e.g. 1.5 usdc -> 1500000 for 6 decimals).

        Raises ValueError rather than rounding when the value has more
        precision than the asset carries.
        """
        if not self.fits_decimals(decimals):
            raise ValueError(f"{self} has more than {decimals} decimal places")
        return int(self.value.scaleb(decimals))

    @classmethod
    def from_base_units(cls, raw: int, denom: str, decimals: int) -> "Amount":
        return cls(Decimal(raw).scaleb(-decimals), denom)

    def to_dict(self) -> Dict[str, str]:
        return {"value": str(self.value), "denom": self.denom}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Amount":
        return cls(to_decimal(data["value"]), data["denom"])

    def __str__(self) -> str:
        return f"{self.value} {self.denom}"


_WRITE_ONCE_FIELDS = ("collateral_amount", "requested_amount")


@dataclass
class LoanRequest:
    """A user's request to borrow against locked collateral.

    The collateral and requested amounts are written once, at creation.
    Everything else is lifecycle state owned by the engine.
    """

    id: str
    collateral_amount: Amount
    requested_amount: Amount
    recipient_address: str
    depositor: str
    target_chain: str
    status: str = RequestStatus.PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None

    def __setattr__(self, name, value):
        if name in _WRITE_ONCE_FIELDS and name in self.__dict__:
            raise AttributeError(f"{name} is immutable once set")
        super().__setattr__(name, value)

    def __post_init__(self):
        if isinstance(self.status, RequestStatus):
            self.status = self.status.value
        RequestStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return RequestStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": RequestStatus(self.status).value,
            "collateral_amount": self.collateral_amount.to_dict(),
            "requested_amount": self.requested_amount.to_dict(),
            "recipient_address": self.recipient_address,
            "depositor": self.depositor,
            "target_chain": self.target_chain,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "failure_reason": self.failure_reason,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
        }


@dataclass(frozen=True)
class HeldAsset:
    """Handle for collateral held by the ledger on behalf of an escrow."""

    id: str
    amount: Amount
    depositor: str


@dataclass
class EscrowRecord:
    """Collateral held for one loan request."""

    request_id: str
    held_asset: HeldAsset
    created_at: Optional[datetime] = None


@dataclass
class FulfillmentClaim:
    """A solver's assertion that it paid out a request on the foreign chain."""

    id: str
    request_id: str
    foreign_tx_reference: str
    solver_identity: str
    claim_status: str = ClaimStatus.PENDING.value
    claimed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    verification_attempts: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.claim_status, ClaimStatus):
            self.claim_status = self.claim_status.value
        ClaimStatus(self.claim_status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "foreign_tx_reference": self.foreign_tx_reference,
            "solver_identity": self.solver_identity,
            "claim_status": ClaimStatus(self.claim_status).value,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "verification_attempts": self.verification_attempts,
            "last_error": self.last_error,
        }


@dataclass
class RequestStateTransition:
    """Audit log entry for a request status change."""

    request_id: str
    from_status: Optional[str]
    to_status: str
    actor: str
    id: str = field(default_factory=new_id)
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
