"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger("plan_ledger.errors")


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised when a job trigger is called without the shared secret."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class StagingError(AppException):
    """Raised when an invoice cannot be durably staged. The purchase must abort."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class SchedulingError(AppException):
    """Raised when an installment schedule cannot be created."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NoPaymentMethodError(AppException):
    """Raised when the owner has no usable saved payment method."""

    def __init__(self, user_id: Any):
        super().__init__(
            message="No saved payment method",
            error_code="ERR_PAYMENT_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"user_id": user_id}
        )


class NoRemainingBalanceError(AppException):
    """Raised when a payoff is requested for an invoice with nothing left to pay."""

    def __init__(self, invoice_id: Any):
        super().__init__(
            message="No remaining balance to pay off",
            error_code="ERR_PAYMENT_002",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"invoice_id": invoice_id}
        )


class InstallmentClaimConflictError(AppException):
    """Raised when installments are already being processed by another run."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAYMENT_003",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class PayoffChargeFailedError(AppException):
    """Raised when the gateway does not confirm an early payoff charge."""

    def __init__(self, invoice_id: Any, reason: str):
        super().__init__(
            message=f"Payment failed: {reason}",
            error_code="ERR_PAYMENT_004",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"invoice_id": invoice_id, "reason": reason}
        )


class GatewayError(Exception):
    """Transport or protocol failure talking to the payment gateway."""


class AccountingTransientError(Exception):
    """Accounting system error that a later sync run may resolve."""


class AccountingRejectedError(Exception):
    """Accounting system confirmed the request can never succeed as sent."""


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception", extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
