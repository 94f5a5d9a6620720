"""Request store protocol.

This defines the interface that all request store backends must implement.
Currently supported:
- InMemoryRequestStore: process-local, for tests and local development
- SQLiteRequestStore: durable local storage, safe across processes

Every status change goes through ``record_claim`` or ``transition_status``,
both of which compare-and-swap on the expected current status and write the
audit entry in the same transaction.
"""

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from zeromiles.types import (
    EscrowRecord,
    FulfillmentClaim,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
)


@runtime_checkable
class RequestStore(Protocol):
    """Protocol for loan request persistence backends."""

    # Requests

    def create_request(
        self,
        request: LoanRequest,
        escrow: EscrowRecord,
        transition: RequestStateTransition,
    ) -> None:
        """Insert a request together with its escrow record, atomically.

        Raises PersistenceError if nothing could be written. Never leaves one
        without the other.
        """
        ...

    def get_request(self, request_id: str) -> Optional[LoanRequest]:
        """Get a request by ID."""
        ...

    def scan_by_status(self, status: RequestStatus) -> List[LoanRequest]:
        """All requests in ``status``, oldest first. Used for restart recovery."""
        ...

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LoanRequest]:
        """List requests, newest first."""
        ...

    def transition_status(
        self,
        request_id: str,
        expected: RequestStatus,
        transition: RequestStateTransition,
        claim: Optional[FulfillmentClaim] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Move a request from ``expected`` to ``transition.to_status``.

        Optionally overwrites the claim in the same transaction. Returns False
        (and writes nothing) if the request is not currently ``expected``.
        Raises ValueError if the move is not an edge of the status graph.
        """
        ...

    # Claims

    def record_claim(self, claim: FulfillmentClaim, transition: RequestStateTransition) -> bool:
        """Insert the request's claim and move it pending -> claimed.

        Returns False (and writes nothing) if the request is not pending or
        already has a claim. Raises TxReferenceReusedError (and writes
        nothing) if the foreign transaction already backs a claim on another
        request of the same target chain.
        """
        ...

    def get_claim(self, request_id: str) -> Optional[FulfillmentClaim]:
        """Get the claim for a request."""
        ...

    def update_claim(self, claim: FulfillmentClaim) -> bool:
        """Update verification bookkeeping on an existing claim."""
        ...

    # Escrow

    def get_escrow(self, request_id: str) -> Optional[EscrowRecord]:
        """Get the escrow record for a request, if collateral is still held."""
        ...

    def delete_escrow(self, request_id: str) -> bool:
        """Destroy the escrow record. Returns False if none existed."""
        ...

    def mark_refunded(self, request_id: str, refunded_at: datetime) -> bool:
        """Stamp ``refunded_at`` and destroy the escrow record, atomically.

        Returns False if the request was already refunded or holds no escrow.
        """
        ...

    def list_escrows(self, status: RequestStatus) -> List[EscrowRecord]:
        """Escrow records still held by requests in ``status``."""
        ...

    # Transitions (audit log)

    def get_transitions(self, request_id: str) -> List[RequestStateTransition]:
        """Get all state transitions for a request, oldest first."""
        ...
