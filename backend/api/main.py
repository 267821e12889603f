"""
PharmaTrack API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import (
    AlreadyCompletedError,
    ConflictError,
    ExpiryScanTimeoutError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    StockEngineError,
    ValidationError,
)
import db.models  # noqa: F401  registers tables on Base.metadata
from db.session import Base, engine

settings = get_settings()
logger = structlog.get_logger()

# Most specific first: DuplicateBatchNumberError is both a Conflict and a Validation error.
ERROR_STATUS_CODES: tuple[tuple[type[StockEngineError], int], ...] = (
    (ConflictError, 409),
    (AlreadyCompletedError, 409),
    (NotFoundError, 404),
    (InsufficientStockError, 422),
    (ValidationError, 400),
    (InvalidStateError, 409),
    (ExpiryScanTimeoutError, 504),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("PharmaTrack API starting up", version=settings.app_version)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    logger.info("PharmaTrack API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Batch stock and expiry alerting engine for hospital pharmacy inventory",
    lifespan=lifespan,
)


def status_code_for(exc: StockEngineError) -> int:
    for error_cls, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            return code
    return 500


@app.exception_handler(StockEngineError)
async def stock_engine_error_handler(request: Request, exc: StockEngineError):
    """Render typed engine errors with their structured detail."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("api.engine_error", path=str(request.url.path), error=exc.code, message=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import alert_tiers, batches, expiry, products

app.include_router(products.router)
app.include_router(batches.router)
app.include_router(expiry.router)
app.include_router(alert_tiers.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
