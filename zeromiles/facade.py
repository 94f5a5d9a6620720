"""Read-only query surface over the request store."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from zeromiles.errors import RequestNotFoundError
from zeromiles.storage.base import RequestStore
from zeromiles.types import (
    FulfillmentClaim,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
    utc_now,
)


@dataclass
class StaleClaim:
    """A claim that has been unresolved for longer than the allowed age."""

    request: LoanRequest
    claim: FulfillmentClaim
    age: timedelta

    def to_dict(self) -> dict:
        return {
            "request_id": self.request.id,
            "foreign_tx_reference": self.claim.foreign_tx_reference,
            "solver_identity": self.claim.solver_identity,
            "claimed_at": self.claim.claimed_at.isoformat() if self.claim.claimed_at else None,
            "age_seconds": int(self.age.total_seconds()),
            "verification_attempts": self.claim.verification_attempts,
            "last_error": self.claim.last_error,
        }


class LoanRequestAPI:
    """Query loan requests and claims. Every call reads the store directly."""

    def __init__(self, store: RequestStore):
        self.store = store

    def get_request(self, request_id: str) -> LoanRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def get_claim_status(self, request_id: str) -> FulfillmentClaim:
        claim = self.store.get_claim(request_id)
        if claim is None:
            if self.store.get_request(request_id) is None:
                raise RequestNotFoundError(request_id)
            raise RequestNotFoundError(request_id, what="Fulfillment claim for request")
        return claim

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LoanRequest]:
        if status is not None and not isinstance(status, RequestStatus):
            status = RequestStatus(status)
        return self.store.list_requests(status=status, limit=limit, offset=offset)

    def get_history(self, request_id: str) -> List[RequestStateTransition]:
        self.get_request(request_id)
        return self.store.get_transitions(request_id)

    def stale_claims(self, max_age: timedelta, now: Optional[datetime] = None) -> List[StaleClaim]:
        """Claimed requests whose claim is older than ``max_age``, oldest first."""
        now = now or utc_now()
        stale = []
        for request in self.store.scan_by_status(RequestStatus.CLAIMED):
            claim = self.store.get_claim(request.id)
            if claim is None or claim.claimed_at is None:
                continue
            age = now - claim.claimed_at
            if age > max_age:
                stale.append(StaleClaim(request=request, claim=claim, age=age))
        return stale
