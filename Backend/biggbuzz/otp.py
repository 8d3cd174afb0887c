"""
One-time passcodes for phone verification and login.

Codes are 6 digits, single use, and expire after OTP_TTL_MINUTES. Only a
salted hash is stored; issuing a new code for a phone discards any earlier
unused ones.
"""

import logging
import secrets
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import CodePurpose, VerificationCode, utcnow
from .security import hash_code
from .validation import mask_phone

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


def generate_otp() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))


async def issue_otp(
    session: AsyncSession,
    phone_number: str,
    purpose: CodePurpose = CodePurpose.OTP_VERIFICATION,
) -> str:
    """Store a fresh code for the phone and return it in plaintext for sending."""
    settings = get_settings()
    await session.execute(
        delete(VerificationCode).where(
            VerificationCode.phone_number == phone_number,
            VerificationCode.purpose == purpose,
            VerificationCode.used_at.is_(None),
        )
    )

    code = generate_otp()
    session.add(
        VerificationCode(
            phone_number=phone_number,
            purpose=purpose,
            code_hash=hash_code(code, salt=phone_number),
            expires_at=utcnow() + timedelta(minutes=settings.otp_ttl_minutes),
        )
    )
    await session.flush()
    logger.info(f"Issued OTP for {mask_phone(phone_number)}")
    return code


async def verify_otp(
    session: AsyncSession,
    phone_number: str,
    code: str,
    purpose: CodePurpose = CodePurpose.OTP_VERIFICATION,
) -> bool:
    """
    Consume a matching unexpired code. Returns False if none matches.

    The code is marked used by a single conditional UPDATE, so of two
    concurrent requests with the same code only one can succeed.
    """
    now = utcnow()
    result = await session.execute(
        update(VerificationCode)
        .where(
            VerificationCode.phone_number == phone_number,
            VerificationCode.purpose == purpose,
            VerificationCode.code_hash == hash_code(code, salt=phone_number),
            VerificationCode.used_at.is_(None),
            VerificationCode.expires_at > now,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"OTP verification failed for {mask_phone(phone_number)}")
        return False
    return True
