"""Exceptions raised by the zeromiles settlement engine and its collaborators."""


class LoanServiceError(Exception):
    """Base exception for loan settlement errors."""

    pass


class InvalidRequestError(LoanServiceError):
    """Malformed input. No state was created or changed."""

    pass


class TxReferenceReusedError(InvalidRequestError):
    """The foreign transaction already backs a claim on another request."""

    def __init__(self, tx_reference: str, chain: str, claimed_by: str):
        super().__init__(
            f"Transaction {tx_reference} on {chain} already backs a claim on request {claimed_by}"
        )
        self.tx_reference = tx_reference
        self.chain = chain
        self.claimed_by = claimed_by


class RequestNotFoundError(LoanServiceError):
    """Unknown request identifier."""

    def __init__(self, request_id: str, what: str = "Loan request"):
        super().__init__(f"{what} not found: {request_id}")
        self.request_id = request_id


class InvalidStateError(LoanServiceError):
    """Operation not valid for the request's current status."""

    def __init__(self, request_id: str, status: str, operation: str):
        super().__init__(f"Cannot {operation} request {request_id} in status '{status}'")
        self.request_id = request_id
        self.status = status
        self.operation = operation


class AlreadyClaimedError(LoanServiceError):
    """Another solver's claim already won the request."""

    def __init__(self, request_id: str):
        super().__init__(f"Loan request {request_id} is already claimed")
        self.request_id = request_id


class VerificationTransientError(LoanServiceError):
    """The foreign chain could not be queried right now. Retried by the poller."""

    pass


class PersistenceError(LoanServiceError):
    """The request store failed to record a state change."""

    pass


class LedgerError(LoanServiceError):
    """The ledger rejected a deposit, release or withdrawal."""

    pass
