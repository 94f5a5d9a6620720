"""
Escrow lifecycle engine.

Owns the request state machine::

    pending --claim--> claimed --verified--> completed   (collateral -> solver)
       |                  |
       |                  +--payout failed--> failed     (collateral stays escrowed)
       +--cancel (refund)-------------------> failed     (collateral -> depositor)

Every mutation of a request runs under that request's asyncio lock, and every
status change is a compare-and-swap in the store. Collateral is released only
by the caller that won the claimed -> completed swap.
"""

import asyncio
import logging
import threading
import weakref
from datetime import datetime
from typing import List, Optional

from zeromiles.clock import Clock, SystemClock
from zeromiles.config import LoanConfig
from zeromiles.errors import (
    AlreadyClaimedError,
    InvalidRequestError,
    InvalidStateError,
    LedgerError,
    PersistenceError,
    RequestNotFoundError,
)
from zeromiles.facade import LoanRequestAPI, StaleClaim
from zeromiles.ledger import LedgerAccessor, Payment, ReleaseReceipt
from zeromiles.poller import ClaimPoller
from zeromiles.storage.base import RequestStore
from zeromiles.types import (
    Amount,
    ClaimStatus,
    EscrowRecord,
    FulfillmentClaim,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
    new_id,
)
from zeromiles.validation import (
    is_valid_address,
    normalize_address,
    normalize_tx_reference,
    validate_identity,
)
from zeromiles.verifier.base import (
    ForeignChainVerifier,
    VerificationQuery,
    VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

VERIFIER_ACTOR = "verifier"


class EscrowEngine:
    """Locks collateral, accepts solver claims and settles them once verified."""

    def __init__(
        self,
        store: RequestStore,
        ledger: LedgerAccessor,
        verifier: ForeignChainVerifier,
        config: Optional[LoanConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.verifier = verifier
        self.config = config or LoanConfig()
        self.clock = clock or SystemClock()
        self.poller = ClaimPoller(self, verifier, self.config, self.clock)

        # Locks live as long as some coroutine holds or waits on them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(request_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[request_id] = lock
            return lock

    def _transition(
        self,
        request_id: str,
        from_status: Optional[RequestStatus],
        to_status: RequestStatus,
        actor: str,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> RequestStateTransition:
        return RequestStateTransition(
            request_id=request_id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            actor=actor,
            reason=reason,
            created_at=at or self.clock.now(),
        )

    # =========================================================================
    # Lock
    # =========================================================================

    def _validate_lock(
        self,
        payment: Payment,
        requested_amount: Amount,
        recipient_address: str,
        depositor: str,
        target_chain: Optional[str],
    ):
        chain_name = target_chain or self.config.default_chain
        chain = self.config.chains.get(chain_name)
        if chain is None:
            raise InvalidRequestError(f"Unsupported target chain: {chain_name}")

        try:
            depositor = validate_identity(depositor, "depositor")
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

        if not isinstance(requested_amount, Amount):
            raise InvalidRequestError("requested_amount must be an Amount")
        if requested_amount.is_zero:
            raise InvalidRequestError("Requested amount must be positive")
        if requested_amount.denom != self.config.target_denom:
            raise InvalidRequestError(
                f"Requested asset must be {self.config.target_denom}, "
                f"got {requested_amount.denom}"
            )
        if not requested_amount.fits_decimals(chain.usdc_decimals):
            raise InvalidRequestError(
                f"Requested amount {requested_amount} has more than "
                f"{chain.usdc_decimals} decimal places on {chain.name}"
            )

        if not is_valid_address(recipient_address, chain):
            raise InvalidRequestError(f"Invalid {chain.name} recipient address: {recipient_address!r}")
        recipient_address = normalize_address(recipient_address, chain)

        try:
            collateral = self.ledger.get_asset_amount(payment)
        except LedgerError as e:
            raise InvalidRequestError(f"Invalid collateral payment: {e}") from e
        if collateral.denom != self.config.collateral_denom:
            raise InvalidRequestError(
                f"Collateral must be {self.config.collateral_denom}, got {collateral.denom}"
            )
        if collateral.is_zero:
            raise InvalidRequestError("Collateral amount must be positive")

        return chain, depositor, recipient_address, collateral

    async def lock(
        self,
        payment: Payment,
        requested_amount: Amount,
        recipient_address: str,
        *,
        depositor: str,
        target_chain: Optional[str] = None,
    ) -> str:
        """Lock ``payment`` as collateral and open a loan request.

        Returns the new request ID. Raises InvalidRequestError without
        taking the payment when any input is invalid.
        """
        chain, depositor, recipient_address, collateral = self._validate_lock(
            payment, requested_amount, recipient_address, depositor, target_chain
        )

        request_id = new_id()
        async with self._lock_for(request_id):
            try:
                held = self.ledger.deposit_collateral(payment, depositor)
            except LedgerError as e:
                raise InvalidRequestError(f"Collateral deposit rejected: {e}") from e

            now = self.clock.now()
            request = LoanRequest(
                id=request_id,
                collateral_amount=held.amount,
                requested_amount=requested_amount,
                recipient_address=recipient_address,
                depositor=depositor,
                target_chain=chain.name,
                status=RequestStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            escrow = EscrowRecord(request_id=request_id, held_asset=held, created_at=now)
            transition = self._transition(
                request_id, None, RequestStatus.PENDING, depositor, "collateral locked", at=now
            )

            try:
                self.store.create_request(request, escrow, transition)
            except Exception as e:
                # No record means no escrow: give the collateral back
                logger.error(f"Failed to persist loan request {request_id}, rolling back deposit: {e}")
                try:
                    self.ledger.withdraw_collateral(held)
                except LedgerError as rollback_error:
                    logger.critical(
                        f"Deposit rollback failed for held asset {held.id} "
                        f"({held.amount} from {depositor}): {rollback_error}"
                    )
                raise PersistenceError(f"Could not record loan request: {e}") from e

        logger.info(
            f"Locked {collateral} for request {request_id}: "
            f"{requested_amount} to {recipient_address} on {chain.name}"
        )
        return request_id

    # =========================================================================
    # Claim
    # =========================================================================

    async def claim(
        self,
        request_id: str,
        foreign_tx_reference: str,
        solver_identity: str,
    ) -> FulfillmentClaim:
        """Record a solver's fulfillment claim and start verifying it.

        Returns as soon as the claim is recorded; the outcome is observed
        later through the request's status.
        """
        try:
            solver_identity = validate_identity(solver_identity, "solver_identity")
            foreign_tx_reference = validate_identity(foreign_tx_reference, "foreign_tx_reference")
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

        async with self._lock_for(request_id):
            request = self.store.get_request(request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
            self._ensure_claimable(request)

            chain = self.config.chains.get(request.target_chain)
            if chain is not None:
                foreign_tx_reference = normalize_tx_reference(foreign_tx_reference, chain)

            now = self.clock.now()
            claim = FulfillmentClaim(
                id=new_id(),
                request_id=request_id,
                foreign_tx_reference=foreign_tx_reference,
                solver_identity=solver_identity,
                claim_status=ClaimStatus.PENDING,
                claimed_at=now,
            )
            transition = self._transition(
                request_id,
                RequestStatus.PENDING,
                RequestStatus.CLAIMED,
                solver_identity,
                f"claimed with {foreign_tx_reference}",
                at=now,
            )
            if not self.store.record_claim(claim, transition):
                # Lost a race against a writer outside this process
                current = self.store.get_request(request_id)
                if current is not None:
                    self._ensure_claimable(current)
                raise AlreadyClaimedError(request_id)

            self.poller.watch(request_id)

        logger.info(f"Request {request_id} claimed by {solver_identity} with {foreign_tx_reference}")
        return claim

    @staticmethod
    def _ensure_claimable(request: LoanRequest) -> None:
        if request.status == RequestStatus.CLAIMED.value:
            raise AlreadyClaimedError(request.id)
        if request.status != RequestStatus.PENDING.value:
            raise InvalidStateError(request.id, request.status, "claim")

    # =========================================================================
    # Verification outcome
    # =========================================================================

    def build_query(self, request: LoanRequest, claim: FulfillmentClaim) -> VerificationQuery:
        """What the foreign chain must show for ``claim`` to verify."""
        chain = self.config.chains.get(request.target_chain)
        return VerificationQuery(
            tx_reference=claim.foreign_tx_reference,
            expected_amount=request.requested_amount,
            recipient_address=request.recipient_address,
            token_denom=chain.usdc_denom if chain else "",
            chain=request.target_chain,
        )

    async def apply_verification(self, request_id: str, result: VerificationResult) -> bool:
        """Settle a claimed request from a final verification result.

        Returns True if this call moved the request. Results for requests that
        are no longer ``claimed`` (duplicates, restarts) are ignored.
        """
        if result.status == VerificationStatus.PENDING:
            return False

        async with self._lock_for(request_id):
            request = self.store.get_request(request_id)
            if request is None or request.status != RequestStatus.CLAIMED.value:
                logger.debug(
                    f"Ignoring {result.status.value} verification for request {request_id}: "
                    f"status is {request.status if request else 'missing'}"
                )
                return False

            claim = self.store.get_claim(request_id)
            if claim is None:
                logger.error(f"Request {request_id} is claimed but has no claim record")
                return False

            if result.status == VerificationStatus.SUCCESS:
                return self._complete(request, claim, result)
            return self._fail(request, claim, result)

    def _complete(
        self, request: LoanRequest, claim: FulfillmentClaim, result: VerificationResult
    ) -> bool:
        now = self.clock.now()
        claim.claim_status = ClaimStatus.CONFIRMED.value
        claim.resolved_at = now
        claim.last_error = None
        transition = self._transition(
            request.id,
            RequestStatus.CLAIMED,
            RequestStatus.COMPLETED,
            VERIFIER_ACTOR,
            f"payout {claim.foreign_tx_reference} verified on {result.chain}",
            at=now,
        )
        if not self.store.transition_status(
            request.id, RequestStatus.CLAIMED, transition, claim=claim
        ):
            logger.info(f"Request {request.id} was settled elsewhere, not releasing")
            return False

        logger.info(f"Request {request.id} completed, releasing collateral to {claim.solver_identity}")
        if self._release_escrow(request.id, claim.solver_identity) is None:
            # Keeps retrying the release in the background until it goes through
            self.poller.watch(request.id)
        return True

    def _fail(
        self, request: LoanRequest, claim: FulfillmentClaim, result: VerificationResult
    ) -> bool:
        now = self.clock.now()
        reason = result.error or result.error_code or "payout verification failed"
        claim.claim_status = ClaimStatus.FAILED.value
        claim.resolved_at = now
        claim.last_error = reason
        transition = self._transition(
            request.id,
            RequestStatus.CLAIMED,
            RequestStatus.FAILED,
            VERIFIER_ACTOR,
            reason,
            at=now,
        )
        if not self.store.transition_status(
            request.id, RequestStatus.CLAIMED, transition, claim=claim, failure_reason=reason
        ):
            return False

        logger.warning(
            f"Request {request.id} failed verification ({result.error_code}): {reason}. "
            f"Collateral stays in escrow"
        )
        return True

    def _release_escrow(self, request_id: str, recipient: str) -> Optional[ReleaseReceipt]:
        escrow = self.store.get_escrow(request_id)
        if escrow is None:
            logger.warning(f"No escrow held for request {request_id}, nothing to release")
            return None
        try:
            receipt = self.ledger.release_collateral(escrow.held_asset, recipient)
        except LedgerError as e:
            # Escrow record stays; release_pending retries it
            logger.error(f"Release of held asset {escrow.held_asset.id} for {request_id} failed: {e}")
            return None
        self.store.delete_escrow(request_id)
        return receipt

    async def release_pending(self, request_id: str) -> bool:
        """Retry the collateral release of a completed request.

        Returns True once nothing is left to release for ``request_id``:
        the escrow is gone, or the request is not completed.
        """
        async with self._lock_for(request_id):
            request = self.store.get_request(request_id)
            if request is None or request.status != RequestStatus.COMPLETED.value:
                return True
            if self.store.get_escrow(request_id) is None:
                return True
            claim = self.store.get_claim(request_id)
            if claim is None or claim.claim_status != ClaimStatus.CONFIRMED.value:
                logger.error(f"Completed request {request_id} has no confirmed claim")
                return False
            return self._release_escrow(request_id, claim.solver_identity) is not None

    async def settle_pending_releases(self) -> int:
        """Release collateral for completed requests whose release never went through."""
        settled = 0
        for escrow in self.store.list_escrows(RequestStatus.COMPLETED):
            if self.store.get_escrow(escrow.request_id) is None:
                continue
            if await self.release_pending(escrow.request_id):
                settled += 1
        if settled:
            logger.info(f"Settled {settled} pending collateral releases")
        return settled

    def unreleased_escrows(self) -> List[EscrowRecord]:
        """Completed requests whose collateral has not reached the solver yet."""
        return self.store.list_escrows(RequestStatus.COMPLETED)

    # =========================================================================
    # Refund (cancellation)
    # =========================================================================

    async def refund(self, request_id: str, *, actor: str) -> ReleaseReceipt:
        """Return escrowed collateral to the depositor.

        Allowed for pending requests (which are cancelled, moving to failed)
        and for failed requests that still hold collateral.
        """
        try:
            actor = validate_identity(actor, "actor")
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

        async with self._lock_for(request_id):
            request = self.store.get_request(request_id)
            if request is None:
                raise RequestNotFoundError(request_id)

            if request.status == RequestStatus.PENDING.value:
                reason = f"cancelled by {actor}"
                transition = self._transition(
                    request_id, RequestStatus.PENDING, RequestStatus.FAILED, actor, reason
                )
                if not self.store.transition_status(
                    request_id, RequestStatus.PENDING, transition, failure_reason=reason
                ):
                    current = self.store.get_request(request_id)
                    raise InvalidStateError(
                        request_id, current.status if current else "missing", "refund"
                    )
            elif request.status != RequestStatus.FAILED.value or request.refunded_at is not None:
                raise InvalidStateError(request_id, request.status, "refund")

            escrow = self.store.get_escrow(request_id)
            if escrow is None:
                raise InvalidStateError(request_id, request.status, "refund")

            receipt = self.ledger.withdraw_collateral(escrow.held_asset)
            self.store.mark_refunded(request_id, self.clock.now())

        logger.info(f"Refunded {receipt.amount} for request {request_id} to {receipt.recipient}")
        return receipt

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> int:
        """Resume work left by a previous process. Returns claims resumed."""
        await self.settle_pending_releases()
        claimed = self.store.scan_by_status(RequestStatus.CLAIMED)
        for request in claimed:
            self.poller.watch(request.id)
        if claimed:
            logger.info(f"Resumed verification polling for {len(claimed)} claimed requests")
        return len(claimed)

    async def stop(self) -> None:
        await self.poller.stop()

    def stale_claims(self, now: Optional[datetime] = None) -> List[StaleClaim]:
        """Claimed requests unresolved for longer than ``max_claim_age``."""
        return LoanRequestAPI(self.store).stale_claims(
            self.config.max_claim_age, now or self.clock.now()
        )
