"""
Core module - configuration, database, errors, request context, and response helpers.
"""
from .config import get_settings
from .db import get_session, Base, engine, AsyncSessionLocal
from .errors import (
    AppError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    GoneError,
    RateLimitError,
    ComplianceError,
    InsufficientBalanceError,
    ServiceUnavailableError,
    setup_exception_handlers,
)
from .request_context import (
    SubscriberContext,
    AdminContext,
    get_current_subscriber,
    get_current_admin,
)
from .responses import (
    ErrorCodes,
    money,
    quantize_money,
    pagination_meta,
    admin_pagination_meta,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Errors
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "GoneError",
    "RateLimitError",
    "ComplianceError",
    "InsufficientBalanceError",
    "ServiceUnavailableError",
    "setup_exception_handlers",
    # Request Context
    "SubscriberContext",
    "AdminContext",
    "get_current_subscriber",
    "get_current_admin",
    # Responses
    "ErrorCodes",
    "money",
    "quantize_money",
    "pagination_meta",
    "admin_pagination_meta",
]
