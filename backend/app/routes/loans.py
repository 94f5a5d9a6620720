"""Loan routes for ZeroMiles.

Endpoints for locking collateral, claiming fulfillment and following a loan
through verification.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request, status

from zeromiles.errors import (
    AlreadyClaimedError,
    InvalidRequestError,
    InvalidStateError,
    LedgerError,
    LoanServiceError,
    PersistenceError,
    RequestNotFoundError,
)
from zeromiles.types import Amount

from ..auth import Operator
from ..database import Engine, Ledger, LoanAPI
from ..logging_config import get_logger, log_loan_event
from ..models import (
    ClaimCreate,
    ClaimResponse,
    ErrorResponse,
    HistoryResponse,
    LoanCreate,
    LoanListResponse,
    LoanResponse,
    RefundResponse,
    TransitionResponse,
)
from ..rate_limit import READ_LIMIT, WRITE_LIMIT, limiter

logger = get_logger("zeromiles.api.loans")
router = APIRouter(prefix="/loans", tags=["loans"])

# Checked in order; AlreadyClaimedError is not an InvalidStateError
_ERROR_STATUS = [
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST, "invalid_request"),
    (RequestNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (AlreadyClaimedError, status.HTTP_409_CONFLICT, "already_claimed"),
    (InvalidStateError, status.HTTP_409_CONFLICT, "invalid_state"),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE, "persistence_error"),
    (LedgerError, status.HTTP_502_BAD_GATEWAY, "ledger_error"),
]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def to_http_exception(error: LoanServiceError) -> HTTPException:
    """Translate a service error into its HTTP response."""
    for error_type, status_code, kind in _ERROR_STATUS:
        if isinstance(error, error_type):
            break
    else:
        status_code, kind = status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"
    return HTTPException(status_code=status_code, detail={"error": kind, "message": str(error)})


# =============================================================================
# Lock / claim
# =============================================================================


@router.post(
    "",
    response_model=LoanResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
@limiter.limit(WRITE_LIMIT)
async def create_loan(request: Request, body: LoanCreate, engine: Engine, ledger: Ledger):
    """
    Lock a collateral payment and open a loan request.

    The payment is consumed into escrow. The loan starts ``pending`` and
    waits for a solver to pay ``requested_amount`` to ``recipient_address``.
    """
    logger.info(f"POST /loans | depositor={body.depositor} | chain={body.target_chain or 'default'}")

    payment = ledger.get_payment(body.payment_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_request", "message": "Unknown or spent payment"},
        )

    try:
        request_id = await engine.lock(
            payment,
            Amount(body.requested_amount, engine.config.target_denom),
            body.recipient_address,
            depositor=body.depositor,
            target_chain=body.target_chain,
        )
    except LoanServiceError as e:
        log_loan_event("lock", "-", False, actor=body.depositor, error=str(e))
        raise to_http_exception(e) from e

    log_loan_event("lock", request_id, True, actor=body.depositor)
    return LoanResponse(**engine.store.get_request(request_id).to_dict())


@router.post(
    "/{request_id}/claim",
    response_model=ClaimResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=ERROR_RESPONSES,
)
@limiter.limit(WRITE_LIMIT)
async def claim_loan(request: Request, request_id: str, body: ClaimCreate, engine: Engine):
    """
    Claim that a loan was paid out on the foreign chain.

    Accepted claims are verified in the background; follow the loan or its
    claim to see the outcome. Only the first claim on a loan is accepted.
    """
    logger.info(f"POST /loans/{request_id}/claim | solver={body.solver_identity}")

    try:
        claim = await engine.claim(request_id, body.foreign_tx_reference, body.solver_identity)
    except LoanServiceError as e:
        log_loan_event("claim", request_id, False, actor=body.solver_identity, error=str(e))
        raise to_http_exception(e) from e

    log_loan_event("claim", request_id, True, actor=body.solver_identity)
    return ClaimResponse(**claim.to_dict())


# =============================================================================
# Queries
# =============================================================================


@router.get("", response_model=LoanListResponse)
@limiter.limit(READ_LIMIT)
async def list_loans(
    request: Request,
    api: LoanAPI,
    status_filter: Literal["pending", "claimed", "completed", "failed"] | None = Query(
        None, alias="status"
    ),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List loans, newest first, optionally filtered by status."""
    loans = api.list_requests(status=status_filter, limit=limit, offset=offset)
    return LoanListResponse(
        loans=[LoanResponse(**loan.to_dict()) for loan in loans],
        total=len(loans),
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=LoanResponse, responses=ERROR_RESPONSES)
@limiter.limit(READ_LIMIT)
async def get_loan(request: Request, request_id: str, api: LoanAPI):
    """Get a loan and its current status."""
    try:
        loan = api.get_request(request_id)
    except LoanServiceError as e:
        raise to_http_exception(e) from e
    return LoanResponse(**loan.to_dict())


@router.get("/{request_id}/claim", response_model=ClaimResponse, responses=ERROR_RESPONSES)
@limiter.limit(READ_LIMIT)
async def get_claim(request: Request, request_id: str, api: LoanAPI):
    """Get the fulfillment claim of a loan."""
    try:
        claim = api.get_claim_status(request_id)
    except LoanServiceError as e:
        raise to_http_exception(e) from e
    return ClaimResponse(**claim.to_dict())


@router.get("/{request_id}/history", response_model=HistoryResponse, responses=ERROR_RESPONSES)
@limiter.limit(READ_LIMIT)
async def get_history(request: Request, request_id: str, api: LoanAPI):
    """Get every status change of a loan, oldest first."""
    try:
        transitions = api.get_history(request_id)
    except LoanServiceError as e:
        raise to_http_exception(e) from e
    return HistoryResponse(
        request_id=request_id,
        transitions=[TransitionResponse(**t.to_dict()) for t in transitions],
    )


# =============================================================================
# Refund
# =============================================================================


@router.post("/{request_id}/refund", response_model=RefundResponse, responses=ERROR_RESPONSES)
@limiter.limit(WRITE_LIMIT)
async def refund_loan(request: Request, request_id: str, operator: Operator, engine: Engine):
    """
    Return escrowed collateral to the depositor.

    Cancels a ``pending`` loan, or refunds a ``failed`` one whose collateral
    is still escrowed. Requires the operator token.
    """
    logger.info(f"POST /loans/{request_id}/refund | actor={operator}")

    try:
        receipt = await engine.refund(request_id, actor=operator)
    except LoanServiceError as e:
        log_loan_event("refund", request_id, False, actor=operator, error=str(e))
        raise to_http_exception(e) from e

    log_loan_event("refund", request_id, True, actor=operator)
    return RefundResponse(
        request_id=request_id,
        recipient=receipt.recipient,
        amount=receipt.amount.to_dict(),
        released_at=receipt.released_at,
    )
