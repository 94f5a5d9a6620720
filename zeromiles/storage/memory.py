"""
In-memory request store.

A single process-wide lock stands in for the transactions of a real backend,
so compare-and-swap semantics match SQLiteRequestStore.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import List, Optional

from zeromiles.errors import PersistenceError, TxReferenceReusedError
from zeromiles.types import (
    ClaimStatus,
    EscrowRecord,
    FulfillmentClaim,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
    require_transition,
    utc_now,
)

logger = logging.getLogger(__name__)


def _status_value(status) -> str:
    return status.value if isinstance(status, RequestStatus) else status


class InMemoryRequestStore:
    """In-memory request storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._lock = threading.RLock()
        self._requests: dict[str, LoanRequest] = {}
        self._escrows: dict[str, EscrowRecord] = {}  # request_id -> escrow
        self._claims: dict[str, FulfillmentClaim] = {}  # request_id -> claim
        self._tx_refs: dict[tuple, str] = {}  # (target_chain, foreign_tx_reference) -> request_id
        self._transitions: dict[str, list[RequestStateTransition]] = {}  # request_id -> list

    # === Requests ===

    def create_request(
        self,
        request: LoanRequest,
        escrow: EscrowRecord,
        transition: RequestStateTransition,
    ) -> None:
        with self._lock:
            if request.id in self._requests:
                raise PersistenceError(f"Loan request {request.id} already exists")
            self._requests[request.id] = copy.deepcopy(request)
            self._escrows[request.id] = copy.deepcopy(escrow)
            self._transitions[request.id] = [copy.deepcopy(transition)]

    def get_request(self, request_id: str) -> Optional[LoanRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return copy.deepcopy(request) if request else None

    def scan_by_status(self, status: RequestStatus) -> List[LoanRequest]:
        status_val = _status_value(status)
        with self._lock:
            found = [copy.deepcopy(r) for r in self._requests.values() if r.status == status_val]
        found.sort(key=lambda r: r.created_at or utc_now())
        return found

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LoanRequest]:
        with self._lock:
            requests = [copy.deepcopy(r) for r in self._requests.values()]

        if status is not None:
            status_val = _status_value(status)
            requests = [r for r in requests if r.status == status_val]

        # Sort by created_at desc
        requests.sort(key=lambda r: r.created_at or utc_now(), reverse=True)

        return requests[offset : offset + limit]

    def transition_status(
        self,
        request_id: str,
        expected: RequestStatus,
        transition: RequestStateTransition,
        claim: Optional[FulfillmentClaim] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        require_transition(expected, transition.to_status)
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != _status_value(expected):
                return False
            request.status = transition.to_status
            request.updated_at = transition.created_at
            if failure_reason is not None:
                request.failure_reason = failure_reason
            if claim is not None:
                self._claims[request_id] = copy.deepcopy(claim)
            self._transitions.setdefault(request_id, []).append(copy.deepcopy(transition))
            return True

    # === Claims ===

    def record_claim(self, claim: FulfillmentClaim, transition: RequestStateTransition) -> bool:
        with self._lock:
            request = self._requests.get(claim.request_id)
            if request is None or request.status != RequestStatus.PENDING.value:
                return False
            if claim.request_id in self._claims:
                return False
            tx_key = (request.target_chain, claim.foreign_tx_reference)
            if tx_key in self._tx_refs:
                raise TxReferenceReusedError(
                    claim.foreign_tx_reference, request.target_chain, self._tx_refs[tx_key]
                )
            self._claims[claim.request_id] = copy.deepcopy(claim)
            self._tx_refs[tx_key] = claim.request_id
            request.status = RequestStatus.CLAIMED.value
            request.updated_at = transition.created_at
            self._transitions.setdefault(claim.request_id, []).append(copy.deepcopy(transition))
            return True

    def get_claim(self, request_id: str) -> Optional[FulfillmentClaim]:
        with self._lock:
            claim = self._claims.get(request_id)
            return copy.deepcopy(claim) if claim else None

    def update_claim(self, claim: FulfillmentClaim) -> bool:
        with self._lock:
            current = self._claims.get(claim.request_id)
            if current is None or current.id != claim.id:
                return False
            # Resolved claims are only written through transition_status
            if current.claim_status != ClaimStatus.PENDING.value:
                return False
            self._claims[claim.request_id] = copy.deepcopy(claim)
            return True

    # === Escrow ===

    def get_escrow(self, request_id: str) -> Optional[EscrowRecord]:
        with self._lock:
            escrow = self._escrows.get(request_id)
            return copy.deepcopy(escrow) if escrow else None

    def delete_escrow(self, request_id: str) -> bool:
        with self._lock:
            return self._escrows.pop(request_id, None) is not None

    def mark_refunded(self, request_id: str, refunded_at: datetime) -> bool:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.refunded_at is not None:
                return False
            if request_id not in self._escrows:
                return False
            del self._escrows[request_id]
            request.refunded_at = refunded_at
            request.updated_at = refunded_at
            return True

    def list_escrows(self, status: RequestStatus) -> List[EscrowRecord]:
        status_val = _status_value(status)
        with self._lock:
            return [
                copy.deepcopy(e)
                for request_id, e in self._escrows.items()
                if self._requests[request_id].status == status_val
            ]

    # === Transitions ===

    def get_transitions(self, request_id: str) -> List[RequestStateTransition]:
        with self._lock:
            transitions = [copy.deepcopy(t) for t in self._transitions.get(request_id, [])]
        # Sort by created_at asc
        return sorted(transitions, key=lambda t: t.created_at or utc_now())
