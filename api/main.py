"""
BloomDesk — FastAPI Backend
Flower subscription billing back office for Bethany Blooms
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
import models  # noqa: F401  registers tables on Base.metadata
from db.database import Base, engine
from routers import admin, billing, orders, payments, subscriptions
from services.errors import (
    BillingValidationError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    StorageUnavailableError,
    TransientVerificationError,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("bloomdesk")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("BloomDesk API starting (PayFast %s)", settings.payfast_mode)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
    logger.info("BloomDesk API shut down")


app = FastAPI(
    title="BloomDesk Billing API",
    description="Subscription invoicing, PayFast reconciliation and admin overrides",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ──────────────────────────────────────────
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(BillingValidationError)
async def validation_handler(request: Request, exc: BillingValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(TransientVerificationError)
async def transient_handler(request: Request, exc: TransientVerificationError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(StorageUnavailableError)
async def storage_handler(request: Request, exc: StorageUnavailableError):
    logger.error("Storage unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ── Routers ────────────────────────────────────────────────
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["Subscriptions"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "BloomDesk API"}


@app.get("/health/db")
async def health_db():
    """Verify the database connection."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as e:
        return {"status": "error", "detail": str(e)}
