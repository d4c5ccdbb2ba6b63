"""Billing error taxonomy and structured error handlers.

Every error response includes a consistent envelope:
    {
        "code": "ERROR_CODE",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }

Billing errors are ``HTTPException`` subclasses whose ``detail`` is a dict
carrying the machine-readable code, so services can raise them directly and
the API layer renders them without translation.
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class BillingError(HTTPException):
    status_code = 500
    code = "BILLING_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: object = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code or self.code
        self.message = message
        self.details = details
        super().__init__(
            status_code=status_code or self.status_code,
            detail={"code": self.code, "message": message, "details": details},
        )

    def __str__(self) -> str:
        return self.message


class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class PlanNotFound(NotFoundError):
    code = "PLAN_NOT_FOUND"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"


class BillingAccountNotFound(NotFoundError):
    code = "BILLING_ACCOUNT_NOT_FOUND"


class TransactionNotFound(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"


class PaymentFailureNotFound(NotFoundError):
    code = "PAYMENT_FAILURE_NOT_FOUND"


class DisputeNotFound(NotFoundError):
    code = "DISPUTE_NOT_FOUND"


class ValidationError(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ProcessorError(BillingError):
    """The payment processor rejected a call, timed out or returned garbage."""

    status_code = 500
    code = "SUBSCRIPTION_ERROR"


class SignatureError(BillingError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class StorageError(BillingError):
    status_code = 500
    code = "STORAGE_ERROR"


class ConflictError(BillingError):
    status_code = 409
    code = "CONFLICT"


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        if exc.status_code >= 500:
            logger.error(
                "Billing request failed: %s %s",
                code,
                message,
                extra={"request_id": request_id},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                jsonable_encoder(exc.errors()),
                request_id,
            ),
        )

    @app.exception_handler(StaleDataError)  # type: ignore[arg-type]
    async def stale_data_handler(
        request: Request, exc: StaleDataError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Concurrent update on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=409,
            content=_error_payload(
                "CONCURRENT_UPDATE",
                "The billing account was modified concurrently; retry the request",
                None,
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )
