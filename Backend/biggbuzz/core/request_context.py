"""
Request Context Resolution Module

Identity resolution for the two audiences of the API: subscribers and
admins. Routes depend on get_current_subscriber / get_current_admin
instead of reading tokens themselves.

ARCHITECTURE:
    1. The token is read from the Authorization: Bearer header, falling
       back to the audience's cookie (subscriber-token / admin-token)
    2. Its signature, expiry and type claim are verified
    3. For subscribers, the account is loaded and must be live, active and
       phone-verified
    4. A context dataclass is returned to the route
"""

import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..compliance import client_ip
from .db import get_session
from .errors import AuthenticationError, AuthorizationError
from .responses import ErrorCodes

# Deferred import to avoid circular dependency
if TYPE_CHECKING:
    from ..models import Subscriber

logger = logging.getLogger(__name__)


@dataclass
class SubscriberContext:
    """The authenticated subscriber behind a request."""
    subscriber: "Subscriber"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def subscriber_id(self) -> str:
        return self.subscriber.id


@dataclass
class AdminContext:
    """The authenticated admin behind a request."""
    username: str
    email: str
    role: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def extract_token(request: Request, cookie_name: str) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(cookie_name) or None


async def get_current_subscriber(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> SubscriberContext:
    """
    Resolve the subscriber for a request.

    Raises:
        AuthenticationError 401: no token, bad token, or account gone
        AuthorizationError 403: account inactive or phone not verified
    """
    from ..models import Subscriber
    from ..security import SUBSCRIBER_COOKIE, TOKEN_TYPE_SUBSCRIBER, decode_token

    token = extract_token(request, SUBSCRIBER_COOKIE)
    if not token:
        raise AuthenticationError("Authentication required. Please sign in.")

    claims = decode_token(token, expected_type=TOKEN_TYPE_SUBSCRIBER)

    result = await session.execute(select(Subscriber).where(Subscriber.id == claims.get("sub")))
    subscriber = result.scalar_one_or_none()
    if not subscriber or subscriber.deleted_at is not None:
        logger.warning(f"Token for unknown subscriber {claims.get('sub')}")
        raise AuthenticationError("Account not found. Please sign in again.")
    if not subscriber.is_active:
        raise AuthorizationError("Account is not active", code=ErrorCodes.ACCOUNT_INACTIVE)
    if not subscriber.phone_verified:
        raise AuthorizationError("Phone number not verified", code=ErrorCodes.PHONE_NOT_VERIFIED)

    return SubscriberContext(
        subscriber=subscriber,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


async def get_current_admin(request: Request) -> AdminContext:
    from ..security import ADMIN_COOKIE, ADMIN_ROLE, TOKEN_TYPE_ADMIN, decode_token

    token = extract_token(request, ADMIN_COOKIE)
    if not token:
        raise AuthenticationError("Admin authentication required")

    claims = decode_token(token, expected_type=TOKEN_TYPE_ADMIN)
    if claims.get("role") != ADMIN_ROLE:
        raise AuthorizationError("Admin access required")

    return AdminContext(
        username=claims.get("username", ""),
        email=claims.get("email", ""),
        role=claims["role"],
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
