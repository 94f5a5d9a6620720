"""
Collateral ledger access.

The engine never touches balances directly. It hands payments to a
``LedgerAccessor`` and gets back an exclusively-owned ``HeldAsset``, which it
later releases to a solver or withdraws back to the depositor.

``InMemoryLedger`` is an issuer-style ledger for tests and local development:
it mints payments, consumes them on deposit, and credits balances on release.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol, Tuple

from zeromiles.errors import LedgerError
from zeromiles.types import Amount, HeldAsset, new_id, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payment:
    """A transferable, single-use claim on an amount of one asset."""

    id: str
    amount: Amount


@dataclass(frozen=True)
class ReleaseReceipt:
    """Confirmation that held collateral left escrow."""

    held_asset_id: str
    recipient: str
    amount: Amount
    released_at: datetime


class LedgerAccessor(Protocol):
    """Protocol for collateral ledgers supplied by the host environment."""

    def get_asset_amount(self, payment: Payment) -> Amount:
        """Amount carried by a live payment. Raises LedgerError if not live."""
        ...

    def deposit_collateral(self, payment: Payment, depositor: str) -> HeldAsset:
        """Consume ``payment`` into escrow. All-or-nothing."""
        ...

    def release_collateral(self, held: HeldAsset, recipient: str) -> ReleaseReceipt:
        """Transfer held collateral to ``recipient``. Fails if already released."""
        ...

    def withdraw_collateral(self, held: HeldAsset) -> ReleaseReceipt:
        """Return held collateral to its depositor. Fails if already released."""
        ...


class InMemoryLedger:
    """In-memory ledger for testing and local development."""

    def __init__(self):
        self._lock = threading.Lock()
        self._payments: Dict[str, Payment] = {}  # live (unspent) payments
        self._held: Dict[str, HeldAsset] = {}  # held_asset_id -> held collateral
        self._receipts: Dict[str, ReleaseReceipt] = {}  # held_asset_id -> receipt
        self._balances: Dict[Tuple[str, str], Decimal] = {}  # (owner, denom) -> balance

    # === Issuance ===

    def mint(self, amount: Amount) -> Payment:
        """Issue a new payment. Test/dev faucet."""
        if amount.is_zero:
            raise LedgerError("Cannot mint a zero amount")
        payment = Payment(id=new_id(), amount=amount)
        with self._lock:
            self._payments[payment.id] = payment
        logger.debug(f"Minted payment {payment.id} for {amount}")
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        """Look up a live payment by ID."""
        with self._lock:
            return self._payments.get(payment_id)

    # === LedgerAccessor ===

    def get_asset_amount(self, payment: Payment) -> Amount:
        with self._lock:
            live = self._payments.get(payment.id)
        if live is None:
            raise LedgerError(f"Payment {payment.id} is not live")
        return live.amount

    def deposit_collateral(self, payment: Payment, depositor: str) -> HeldAsset:
        with self._lock:
            live = self._payments.pop(payment.id, None)
            if live is None:
                raise LedgerError(f"Payment {payment.id} is not live")
            held = HeldAsset(id=new_id(), amount=live.amount, depositor=depositor)
            self._held[held.id] = held
        logger.info(f"Deposited {held.amount} from {depositor} as held asset {held.id}")
        return held

    def release_collateral(self, held: HeldAsset, recipient: str) -> ReleaseReceipt:
        return self._pay_out(held, recipient)

    def withdraw_collateral(self, held: HeldAsset) -> ReleaseReceipt:
        return self._pay_out(held, held.depositor)

    def _pay_out(self, held: HeldAsset, recipient: str) -> ReleaseReceipt:
        with self._lock:
            if held.id in self._receipts:
                raise LedgerError(f"Held asset {held.id} was already released")
            current = self._held.pop(held.id, None)
            if current is None:
                raise LedgerError(f"Unknown held asset {held.id}")
            key = (recipient, current.amount.denom)
            self._balances[key] = self._balances.get(key, Decimal(0)) + current.amount.value
            receipt = ReleaseReceipt(
                held_asset_id=held.id,
                recipient=recipient,
                amount=current.amount,
                released_at=utc_now(),
            )
            self._receipts[held.id] = receipt
        logger.info(f"Released held asset {held.id} ({receipt.amount}) to {recipient}")
        return receipt

    # === Inspection ===

    def balance_of(self, owner: str, denom: str) -> Decimal:
        with self._lock:
            return self._balances.get((owner, denom.lower()), Decimal(0))

    def is_held(self, held_asset_id: str) -> bool:
        with self._lock:
            return held_asset_id in self._held

    def get_receipt(self, held_asset_id: str) -> Optional[ReleaseReceipt]:
        with self._lock:
            return self._receipts.get(held_asset_id)
