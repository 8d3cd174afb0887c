"""
Response Helpers

Shared pieces every router uses to shape its JSON.

LIST RESPONSES:
    Storefront lists carry a pagination block:

        {
            "products": [...],
            "pagination": {
                "page": 1, "limit": 12, "total": 40,
                "totalPages": 4, "hasNext": true, "hasPrev": false
            }
        }

MONEY:
    Amounts are Decimal in the database and are rendered as JSON numbers
    with two decimal places via money().
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# ============================================================================
# ERROR CODES
# ============================================================================

class ErrorCodes:
    """Error codes that routes raise in addition to the per-class defaults."""

    # Registration
    USER_EXISTS = "USER_EXISTS"
    UNDERAGE = "UNDERAGE"
    INVALID_SA_ID = "INVALID_SA_ID"
    INVALID_PHONE = "INVALID_PHONE"
    SMS_FAILED = "SMS_FAILED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    TERMS_REQUIRED = "TERMS_REQUIRED"
    PROFILE_INCOMPLETE = "PROFILE_INCOMPLETE"

    # OTP
    INVALID_OTP = "INVALID_OTP"
    OTP_NOT_SENT = "OTP_NOT_SENT"
    OTP_ALREADY_VERIFIED = "OTP_ALREADY_VERIFIED"
    OTP_NOT_VERIFIED = "OTP_NOT_VERIFIED"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    REGISTRATION_EXPIRED = "REGISTRATION_EXPIRED"

    # Accounts
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    PHONE_NOT_VERIFIED = "PHONE_NOT_VERIFIED"
    ADMIN_NOT_CONFIGURED = "ADMIN_NOT_CONFIGURED"

    # Commerce
    EMPTY_CART = "EMPTY_CART"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INVALID_ACTION = "INVALID_ACTION"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

TWO_PLACES = Decimal("0.01")


def quantize_money(value) -> Decimal:
    """Round an amount to cents, half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def money(value: Optional[Decimal]) -> float:
    if value is None:
        return 0.0
    return float(quantize_money(value))


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def pagination_meta(page: int, limit: int, total: int) -> dict:
    """Pagination block used by storefront lists."""
    pages = total_pages(total, limit)
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": pages,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }


def admin_pagination_meta(page: int, limit: int, total: int) -> dict:
    """Pagination block used by the admin user listing."""
    pages = total_pages(total, limit)
    return {
        "page": page,
        "limit": limit,
        "totalUsers": total,
        "totalPages": pages,
        "hasNextPage": page < pages,
        "hasPreviousPage": page > 1,
    }


def iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class CamelModel(BaseModel):
    """Request body base: snake_case attributes, camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
