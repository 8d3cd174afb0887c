"""
Subscriber account helpers shared by self-service and admin-assisted
registration.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import ConflictError, ValidationError
from .core.responses import ErrorCodes, iso, money
from .ledger import apply_token_transaction
from .models import Subscriber, TokenTransactionType
from .security import hash_sa_id
from .validation import SAIDInfo, mask_sa_id, normalize_sa_phone, parse_sa_id

logger = logging.getLogger(__name__)


def check_registration_identity(sa_id: str, phone_number: str) -> tuple[SAIDInfo, str, str]:
    """
    Validate an ID number and phone for registration.

    Returns:
        (parsed ID info, normalized phone, keyed ID hash)

    Raises:
        ValidationError: bad ID, underage holder, or bad phone
    """
    info = parse_sa_id(sa_id)
    if not info.is_valid_age:
        raise ValidationError(
            "You must be 18 or older to register", code=ErrorCodes.UNDERAGE
        )
    phone = normalize_sa_phone(phone_number)
    return info, phone, hash_sa_id(sa_id)


async def ensure_no_existing_subscriber(session: AsyncSession, phone: str, id_hash: str) -> None:
    result = await session.execute(
        select(Subscriber.id).where(
            or_(Subscriber.phone_number == phone, Subscriber.sa_id_hash == id_hash)
        )
    )
    if result.first():
        raise ConflictError(
            "An account with this phone number or ID number already exists",
            code=ErrorCodes.USER_EXISTS,
        )


async def grant_signup_bonus(session: AsyncSession, subscriber: Subscriber) -> None:
    settings = get_settings()
    if settings.signup_bonus_tokens <= 0:
        return
    await apply_token_transaction(
        session,
        subscriber,
        type=TokenTransactionType.BONUS,
        amount=settings.signup_bonus_tokens,
        description="Welcome bonus for completing registration",
        metadata={"reason": "signup_bonus"},
    )


def serialize_subscriber(subscriber: Subscriber) -> dict:
    return {
        "id": subscriber.id,
        "firstName": subscriber.first_name,
        "lastName": subscriber.last_name,
        "email": subscriber.email,
        "phoneNumber": subscriber.phone_number,
        "saIdNumber": mask_sa_id(subscriber.sa_id_last4),
        "dateOfBirth": iso(subscriber.date_of_birth),
        "gender": subscriber.gender,
        "isSACitizen": subscriber.is_sa_citizen,
        "isActive": subscriber.is_active,
        "phoneVerified": subscriber.phone_verified,
        "acceptedTerms": subscriber.accepted_terms,
        "acceptedPrivacy": subscriber.accepted_privacy,
        "tokenBalance": money(subscriber.token_balance),
        "lastLoginAt": iso(subscriber.last_login_at),
        "createdAt": iso(subscriber.created_at),
    }
