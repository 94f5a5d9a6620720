"""Foreign-chain verification contract.

A verifier answers one question: did ``tx_reference`` credit at least
``expected_amount`` of the payout token to ``recipient_address``?

- ``success``: yes, and the transaction is final enough to pay the solver
- ``failed``: the transaction exists but reverted or does not pay the recipient
- ``pending``: not found yet, or not enough confirmations

Anything that prevents an answer (network errors, node errors) raises
``VerificationTransientError`` so the poller retries.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from zeromiles.types import Amount


class VerificationStatus(str, Enum):
    """Outcome of one verification query."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class VerificationQuery:
    """What the foreign chain must show for a claim to verify."""

    tx_reference: str
    expected_amount: Amount
    recipient_address: str
    token_denom: str  # on-chain denom or token contract of the payout asset
    chain: str


@dataclass
class VerificationResult:
    """Result of verifying a foreign-chain payout."""

    status: VerificationStatus
    tx_reference: str
    chain: str

    # Transfer details (populated on success)
    recipient_address: Optional[str] = None
    amount: Optional[Decimal] = None  # Human-readable (e.g., 1000.00 USDC)
    amount_raw: Optional[int] = None  # Base units (e.g., 1000000000)

    # Block info
    height: Optional[int] = None
    block_timestamp: Optional[datetime] = None
    confirmations: Optional[int] = None

    # Why the result is failed/pending
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status != VerificationStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "tx_reference": self.tx_reference,
            "chain": self.chain,
            "recipient_address": self.recipient_address,
            "amount": str(self.amount) if self.amount is not None else None,
            "amount_raw": self.amount_raw,
            "height": self.height,
            "block_timestamp": self.block_timestamp.isoformat() if self.block_timestamp else None,
            "confirmations": self.confirmations,
            "error": self.error,
            "error_code": self.error_code,
        }


class ForeignChainVerifier(Protocol):
    """Protocol for foreign-chain payout verifiers."""

    async def verify(self, query: VerificationQuery) -> VerificationResult:
        """Check the foreign chain. Raises VerificationTransientError to request a retry."""
        ...
