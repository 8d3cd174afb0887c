"""
Token and credential primitives.

Subscriber and admin sessions are HS256 JWTs signed with JWT_SECRET.
The token "type" claim keeps the two audiences apart: an admin token is
never accepted where a subscriber token is expected and vice versa.

Usage:
    from biggbuzz.security import create_subscriber_token, decode_token

    token = create_subscriber_token(subscriber.id, subscriber.phone_number)
    claims = decode_token(token, expected_type=TOKEN_TYPE_SUBSCRIBER)
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .core.config import get_settings
from .core.errors import AuthenticationError, ServiceUnavailableError
from .core.responses import ErrorCodes

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
TOKEN_TYPE_SUBSCRIBER = "subscriber"
TOKEN_TYPE_ADMIN = "admin"
ADMIN_ROLE = "ADMIN"

SUBSCRIBER_COOKIE = "subscriber-token"
ADMIN_COOKIE = "admin-token"

_DEV_SECRET = "biggbuzz-dev-secret"


def _signing_secret() -> str:
    settings = get_settings()
    if settings.jwt_secret:
        return settings.jwt_secret
    if settings.is_production:
        raise ServiceUnavailableError("JWT secret is not configured")
    return _DEV_SECRET


def _encode(claims: dict, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {**claims, "iat": now, "exp": now + lifetime}
    return jwt.encode(payload, _signing_secret(), algorithm=JWT_ALGORITHM)


def create_subscriber_token(subscriber_id: str, phone_number: str) -> str:
    settings = get_settings()
    return _encode(
        {"sub": subscriber_id, "phone": phone_number, "type": TOKEN_TYPE_SUBSCRIBER},
        timedelta(days=settings.subscriber_token_days),
    )


def create_admin_token(username: str, email: str) -> str:
    settings = get_settings()
    return _encode(
        {
            "sub": f"admin:{username}",
            "username": username,
            "email": email,
            "role": ADMIN_ROLE,
            "type": TOKEN_TYPE_ADMIN,
        },
        timedelta(days=settings.admin_token_days),
    )


def decode_token(token: str, expected_type: str) -> dict:
    """
    Verify a token's signature, expiry and type.

    Raises:
        AuthenticationError: token is expired, malformed or of the wrong type
    """
    try:
        claims = jwt.decode(token, _signing_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired. Please sign in again.")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected token: {e}")
        raise AuthenticationError("Invalid authentication token")

    if claims.get("type") != expected_type:
        raise AuthenticationError("Invalid authentication token")
    return claims


def verify_admin_credentials(username: str, password: str) -> bool:
    settings = get_settings()
    if not settings.admin_configured:
        raise ServiceUnavailableError(
            "Admin credentials are not configured", code=ErrorCodes.ADMIN_NOT_CONFIGURED
        )
    username_ok = hmac.compare_digest(username.encode(), settings.admin_username.encode())
    password_ok = hmac.compare_digest(password.encode(), settings.admin_password.encode())
    return username_ok and password_ok


def hash_sa_id(id_number: str) -> str:
    """Keyed hash of an ID number; the raw number is never stored."""
    settings = get_settings()
    key = (settings.id_hash_secret or _signing_secret()).encode()
    return hmac.new(key, id_number.encode(), hashlib.sha256).hexdigest()


def hash_code(code: str, salt: Optional[str] = None) -> str:
    material = f"{salt}:{code}" if salt else code
    return hashlib.sha256(material.encode()).hexdigest()
