"""
Application Error Module

Typed errors raised by route handlers and services, plus the FastAPI
exception handlers that render them.

ERROR BODY:
    Every error response has the same shape:

        {
            "error": "ERROR_CODE",
            "message": "Human-readable message",
            "statusCode": 400,
            "timestamp": "2025-01-01T12:00:00+00:00",
            "path": "/api/cart",
            "details": {...} | null
        }

USAGE:
    from biggbuzz.core.errors import NotFoundError

    raise NotFoundError("Product not found")
    raise ConflictError("User already exists", code="USER_EXISTS")
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map to a JSON error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_ERROR"


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "AUTHORIZATION_ERROR"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class GoneError(AppError):
    status_code = status.HTTP_410_GONE
    code = "GONE"


class RateLimitError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMIT_EXCEEDED"


class ComplianceError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "COMPLIANCE_ERROR"


class InsufficientBalanceError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INSUFFICIENT_BALANCE"


class ServiceUnavailableError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "SERVICE_ERROR"


# ────────────────────────────────────────────────────────────────
# Rendering
# ────────────────────────────────────────────────────────────────

def build_error_body(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> dict:
    return {
        "error": code,
        "message": message,
        "statusCode": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "details": jsonable_encoder(details) if details is not None else None,
    }


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_body(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        ),
        headers=exc.headers,
    )


_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        message = exc.detail.get("message") or str(exc.detail.get("error", ""))
        details = exc.detail
    else:
        message = str(exc.detail)
        details = None
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_body(
            request,
            status_code=exc.status_code,
            code=_HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
            message=message,
            details=details,
        ),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=build_error_body(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="VALIDATION_ERROR",
            message="Invalid request data",
            details=exc.errors(),
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception in {request.method} {request.url.path}: {exc}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=build_error_body(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="INTERNAL_ERROR",
            message="Internal server error",
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the error handlers on the application."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
