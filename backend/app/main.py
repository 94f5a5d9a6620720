"""ZeroMiles Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from zeromiles.types import RequestStatus

from .config import get_settings
from .database import create_engine
from .logging_config import get_logger
from .rate_limit import limiter
from .routes import ledger_router, loans_router, maintenance_router

logger = get_logger("zeromiles.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    logger.info(f"Starting ZeroMiles Backend API (debug={settings.debug})")
    engine, ledger = create_engine(settings)
    app.state.engine = engine
    app.state.ledger = ledger
    resumed = await engine.start()
    logger.info(f"Settlement engine started, resumed {resumed} claims")
    try:
        yield
    finally:
        # Shutdown
        logger.info("Shutting down ZeroMiles Backend API")
        await engine.stop()
        app.state.engine = None


app = FastAPI(
    title="ZeroMiles Backend API",
    description="Cross-chain collateralized loan settlement",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(loans_router)
app.include_router(maintenance_router)
app.include_router(ledger_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "zeromiles-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with actual store verification."""
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return {"status": "unavailable", "database": "disconnected"}

    db_status = "disconnected"
    try:
        engine.store.list_requests(status=RequestStatus.CLAIMED, limit=1)
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
        "active_polls": engine.poller.active_count,
        "chains": getattr(engine.poller.verifier, "chains", []),
    }
