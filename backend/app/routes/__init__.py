"""API routes."""

from .ledger import router as ledger_router
from .loans import router as loans_router
from .maintenance import router as maintenance_router

__all__ = [
    "loans_router",
    "maintenance_router",
    "ledger_router",
]
