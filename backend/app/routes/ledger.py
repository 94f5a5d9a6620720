"""Development ledger routes.

The backend holds collateral in an in-memory ledger. In debug mode this
faucet mints payments so loans can be exercised end to end.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from zeromiles.errors import LedgerError
from zeromiles.types import Amount

from ..config import Settings, get_settings
from ..database import Ledger
from ..logging_config import get_logger
from ..models import PaymentCreate, PaymentResponse
from ..rate_limit import WRITE_LIMIT, limiter

logger = get_logger("zeromiles.api.ledger")
router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
async def mint_payment(
    request: Request,
    body: PaymentCreate,
    ledger: Ledger,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Mint a collateral payment. Only available when ``ZEROMILES_DEBUG`` is set."""
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    try:
        payment = ledger.mint(Amount(body.amount, body.denom))
    except (LedgerError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_request", "message": str(e)},
        ) from e

    logger.info(f"Minted payment {payment.id} for {payment.amount}")
    return PaymentResponse(payment_id=payment.id, amount=payment.amount.to_dict())
