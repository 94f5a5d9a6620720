"""Engine wiring for the ZeroMiles backend.

The lifespan handler builds one ``EscrowEngine`` per process and parks it on
``app.state``; routes reach it through the ``Engine`` and ``Ledger``
dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from zeromiles import EscrowEngine, LoanRequestAPI
from zeromiles.ledger import InMemoryLedger
from zeromiles.storage import SQLiteRequestStore
from zeromiles.verifier import build_verifier

from .config import Settings
from .logging_config import get_logger

logger = get_logger("zeromiles.api.database")


def create_engine(settings: Settings) -> tuple[EscrowEngine, InMemoryLedger]:
    """Build the engine over the SQLite store at ``settings.db_path``."""
    loan_config = settings.loan_config()
    store = SQLiteRequestStore(db_path=settings.db_path)
    # Collateral custody is host-provided; this process runs the in-memory ledger
    ledger = InMemoryLedger()
    verifier = build_verifier(loan_config)
    engine = EscrowEngine(store=store, ledger=ledger, verifier=verifier, config=loan_config)
    logger.info(
        f"Engine ready | db={settings.db_path} | default_chain={loan_config.default_chain} | "
        f"poll_interval={loan_config.poll_interval}s"
    )
    return engine, ledger


def get_engine(request: Request) -> EscrowEngine:
    """FastAPI dependency for the escrow engine."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settlement engine is not running",
        )
    return engine


def get_ledger(request: Request) -> InMemoryLedger:
    """FastAPI dependency for the collateral ledger."""
    get_engine(request)
    return request.app.state.ledger


def get_loan_api(engine: Annotated[EscrowEngine, Depends(get_engine)]) -> LoanRequestAPI:
    """FastAPI dependency for read-only loan queries."""
    return LoanRequestAPI(engine.store)


# Type aliases for dependency injection
Engine = Annotated[EscrowEngine, Depends(get_engine)]
Ledger = Annotated[InMemoryLedger, Depends(get_ledger)]
LoanAPI = Annotated[LoanRequestAPI, Depends(get_loan_api)]
