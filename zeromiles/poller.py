"""
Confirmation polling for claimed requests.

One asyncio task per claimed request queries the foreign chain until the
claim verifies or fails:

- success / failed: handed to the engine once, task ends
- pending: sleep the backoff interval, poll again
- transient error: logged and counted, sleep, poll again

A completed request whose collateral release failed keeps its task: the
release is retried on the same backoff until the escrow is gone.

Tasks re-read the request before every round and stop verifying once it is no
longer ``claimed``. Nothing here survives a restart; ``EscrowEngine.start``
re-creates the tasks from the store.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Optional

from zeromiles.clock import Clock
from zeromiles.config import LoanConfig
from zeromiles.errors import VerificationTransientError
from zeromiles.types import FulfillmentClaim, LoanRequest, RequestStatus
from zeromiles.verifier.base import (
    ForeignChainVerifier,
    VerificationResult,
    VerificationStatus,
)

if TYPE_CHECKING:
    from zeromiles.engine import EscrowEngine

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED = "VERIFICATION_BUDGET_EXHAUSTED"


class ClaimPoller:
    """Runs one self-rescheduling verification task per claimed request."""

    def __init__(
        self,
        engine: "EscrowEngine",
        verifier: ForeignChainVerifier,
        config: LoanConfig,
        clock: Clock,
    ):
        self.engine = engine
        self.verifier = verifier
        self.config = config
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}
        self._alarmed: set = set()  # request IDs already reported as stale

    def watch(self, request_id: str) -> asyncio.Task:
        """Start polling ``request_id`` unless it is already being polled."""
        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(request_id), name=f"zeromiles-poll-{request_id}")
        self._tasks[request_id] = task
        task.add_done_callback(lambda t, rid=request_id: self._forget(rid, t))
        return task

    def _forget(self, request_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(request_id) is task:
            del self._tasks[request_id]
        self._alarmed.discard(request_id)

    def is_watching(self, request_id: str) -> bool:
        task = self._tasks.get(request_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def join(self, request_id: str) -> None:
        """Wait until polling for ``request_id`` ends."""
        task = self._tasks.get(request_id)
        if task is not None:
            await asyncio.shield(task)

    async def stop(self) -> None:
        """Cancel every polling task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._alarmed.clear()

    # =========================================================================
    # Polling loop
    # =========================================================================

    async def _run(self, request_id: str) -> None:
        while True:
            attempts = await self.poll_once(request_id)
            if attempts is None:
                break
            await asyncio.sleep(self.config.next_poll_delay(attempts))
        await self._release_until_settled(request_id)

    async def _release_until_settled(self, request_id: str) -> None:
        attempt = 0
        while not await self.engine.release_pending(request_id):
            attempt += 1
            logger.warning(
                f"Collateral release for completed request {request_id} still pending "
                f"(attempt {attempt})"
            )
            await asyncio.sleep(self.config.next_poll_delay(attempt))

    def _load(self, request_id: str):
        request = self.engine.store.get_request(request_id)
        if request is None or request.status != RequestStatus.CLAIMED.value:
            return None, None
        claim = self.engine.store.get_claim(request_id)
        if claim is None:
            logger.error(f"Request {request_id} is claimed but has no claim record")
            return None, None
        return request, claim

    async def poll_once(self, request_id: str) -> Optional[int]:
        """Run one verification round.

        Returns the claim's attempt count if polling should continue, or
        None once the request is settled or no longer claimed.
        """
        request, claim = self._load(request_id)
        if request is None:
            logger.debug(f"Stopped polling request {request_id}: no longer claimed")
            return None

        claim.verification_attempts += 1
        self._check_staleness(request, claim)

        result: Optional[VerificationResult] = None
        try:
            result = await self.verifier.verify(self.engine.build_query(request, claim))
        except VerificationTransientError as e:
            logger.warning(
                f"Transient verification error for request {request_id} "
                f"(attempt {claim.verification_attempts}): {e}"
            )
            claim.last_error = str(e)
        except Exception as e:
            logger.exception(
                f"Unexpected verifier error for request {request_id} "
                f"(attempt {claim.verification_attempts})"
            )
            claim.last_error = f"Unexpected error: {e}"

        if result is not None and result.is_final:
            if await self._settle(request_id, result):
                return None
            return claim.verification_attempts

        if result is not None:
            claim.last_error = result.error
            logger.debug(f"Payout for request {request_id} still pending: {result.error_code}")

        self.engine.store.update_claim(claim)

        budget = self.config.max_verification_attempts
        if budget is not None and claim.verification_attempts >= budget:
            logger.warning(
                f"Verification budget exhausted for request {request_id} "
                f"after {claim.verification_attempts} attempts"
            )
            exhausted = VerificationResult(
                status=VerificationStatus.FAILED,
                tx_reference=claim.foreign_tx_reference,
                chain=request.target_chain,
                error="verification budget exhausted",
                error_code=BUDGET_EXHAUSTED,
            )
            if await self._settle(request_id, exhausted):
                return None

        return claim.verification_attempts

    async def _settle(self, request_id: str, result: VerificationResult) -> bool:
        """Hand a final result to the engine. False means retry next round."""
        try:
            await self.engine.apply_verification(request_id, result)
        except Exception:
            logger.exception(f"Failed to apply {result.status.value} result for request {request_id}")
            return False
        return True

    def _check_staleness(self, request: LoanRequest, claim: FulfillmentClaim) -> None:
        if request.id in self._alarmed or claim.claimed_at is None:
            return
        age = self.clock.now() - claim.claimed_at
        if age > self.config.max_claim_age:
            self._alarmed.add(request.id)
            logger.warning(
                f"Stale claim for request {request.id}: {claim.foreign_tx_reference} by "
                f"{claim.solver_identity} unresolved for {age} "
                f"({claim.verification_attempts} attempts)"
            )
