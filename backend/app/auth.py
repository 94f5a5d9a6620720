"""Operator authentication for the ZeroMiles backend.

Lock and claim are open endpoints: the collateral payment and the on-chain
payout are their own proof. Refunds and maintenance views need the operator
bearer token configured in ``ZEROMILES_OPERATOR_TOKEN``.
"""

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("zeromiles.api.auth")

security = HTTPBearer(auto_error=False)

OPERATOR_ACTOR = "operator"


async def require_operator(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    """Check the operator bearer token. Returns the actor name to record."""
    if not settings.operator_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access is not configured",
        )
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing operator token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, settings.operator_token):
        logger.warning("Rejected request with invalid operator token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid operator token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return OPERATOR_ACTOR


# Type alias for dependency injection
Operator = Annotated[str, Depends(require_operator)]
