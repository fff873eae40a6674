"""
FastAPI Application Entry Point.

This is the main application file for the Plan Ledger job trigger API.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from plan_ledger.app.core.config import settings
from plan_ledger.app.core.observability import ObservabilityMiddleware, configure_logging
from plan_ledger.app.api.v1.router import router as api_v1_router
from plan_ledger.app.db.session import engine, Base
from plan_ledger.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from plan_ledger.app.models.user import User
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.invoice import Invoice, InvoiceLineItem
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.audit_log import AuditLog
from plan_ledger.app.models.dlq import DeadLetterQueue
from plan_ledger.app.models.notification import Notification


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging.
    2. Creates database tables on startup.
    """
    configure_logging(settings.log_level)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Installment billing and accounting reconciliation jobs",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
