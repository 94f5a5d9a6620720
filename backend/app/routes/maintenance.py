"""Maintenance routes for ZeroMiles.

Operator views for claims whose verification is taking too long, and for
completed loans whose collateral release keeps failing. Polling never gives
up on its own unless a verification budget is configured, so these are the
loans a human should look at.
"""

from datetime import timedelta

from fastapi import APIRouter, Query, Request

from ..auth import Operator
from ..database import Engine, LoanAPI
from ..logging_config import get_logger
from ..models import StaleClaimResponse, StaleClaimsResponse, UnreleasedEscrowResponse
from ..rate_limit import READ_LIMIT, limiter

logger = get_logger("zeromiles.api.maintenance")
router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.get("/stale-claims", response_model=StaleClaimsResponse)
@limiter.limit(READ_LIMIT)
async def list_stale_claims(
    request: Request,
    operator: Operator,
    engine: Engine,
    api: LoanAPI,
    max_age_minutes: float | None = Query(
        None,
        gt=0,
        le=60 * 24 * 30,
        description="Override the configured maximum claim age",
    ),
):
    """
    List claimed loans whose verification has been running too long.

    Oldest claims first. Defaults to the configured ``max_claim_age``.
    Completed loans still holding collateral are listed under ``unreleased``.
    """
    if max_age_minutes is None:
        max_age = engine.config.max_claim_age
    else:
        max_age = timedelta(minutes=max_age_minutes)

    checked_at = engine.clock.now()
    stale = sorted(api.stale_claims(max_age, now=checked_at), key=lambda s: s.age, reverse=True)
    if stale:
        logger.warning(f"{len(stale)} stale claims older than {max_age}")

    unreleased = engine.unreleased_escrows()
    if unreleased:
        logger.warning(f"{len(unreleased)} completed loans still hold collateral")

    return StaleClaimsResponse(
        claims=[StaleClaimResponse(**s.to_dict()) for s in stale],
        total=len(stale),
        unreleased=[
            UnreleasedEscrowResponse(
                request_id=e.request_id,
                held_asset_id=e.held_asset.id,
                amount=e.held_asset.amount.to_dict(),
                held_since=e.created_at,
            )
            for e in unreleased
        ],
        max_age_minutes=max_age.total_seconds() / 60,
        checked_at=checked_at,
    )
