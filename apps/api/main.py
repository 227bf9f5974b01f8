"""
Gas Cylinder Booking - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    bookings,
    payments,
    admin,
)
from services.errors import LedgerError


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Gas Cylinder Booking API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    print(
        f"📦 Annual quota {settings.ANNUAL_CYLINDER_QUOTA} cylinders; "
        f"COD deduction at {settings.COD_DEDUCTION_POINT}."
    )
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Gas Cylinder Booking API",
    description="Book gas cylinders against a yearly entitlement and manage agency payments",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Render typed domain errors with their reason so callers can self-diagnose."""
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(bookings.router, tags=["Bookings"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Gas Cylinder Booking API",
        "version": "0.1.0",
        "status": "running"
    }
