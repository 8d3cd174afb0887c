"""
Admin-assisted (in-store) registration.

An admin enters the customer's details, the customer reads back the code
sent to their phone, and the admin completes the account:

    1. POST /initiate-registration  -> pending row + OTP by SMS
    2. POST /verify-otp             -> pending row marked verified
    3. POST /complete-registration  -> active subscriber, pending row removed

Pending rows expire after PENDING_REGISTRATION_MINUTES and are discarded
after PENDING_REGISTRATION_MAX_ATTEMPTS wrong codes.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import Field, field_validator
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import otp as otp_service
from .. import sms
from ..accounts import (
    check_registration_identity,
    ensure_no_existing_subscriber,
    grant_signup_bonus,
    serialize_subscriber,
)
from ..compliance import log_compliance_event
from ..core.config import get_settings
from ..core.db import get_session
from ..core.errors import (
    ConflictError,
    GoneError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)
from ..core.request_context import AdminContext, get_current_admin
from ..core.responses import CamelModel, ErrorCodes, iso
from ..models import ComplianceEventType, PendingRegistration, Subscriber, ensure_utc, utcnow
from ..validation import mask_phone, mask_sa_id, sanitize_text
from .subscriber_auth import EMAIL_PATTERN

router = APIRouter(prefix="/api/admin", tags=["admin-registration"])
logger = logging.getLogger(__name__)
settings = get_settings()


# === Request Models ===

class InitiateRegistrationRequest(CamelModel):
    sa_id: str = Field(..., min_length=13, max_length=13)
    phone_number: str = Field(..., min_length=10, max_length=20)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: Optional[str] = Field(None, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("first_name", "last_name")
    @classmethod
    def clean_name(cls, v: str) -> str:
        cleaned = sanitize_text(v)
        if not cleaned:
            raise ValueError("Name cannot be empty")
        return cleaned


class PendingOtpRequest(CamelModel):
    registration_id: str
    otp: str = Field(..., pattern=r"^\d{6}$")


class CompletePendingRequest(CamelModel):
    registration_id: str


# === Helpers ===

def is_expired(pending: PendingRegistration) -> bool:
    return ensure_utc(pending.expires_at) <= utcnow()


async def load_pending(session: AsyncSession, registration_id: str) -> PendingRegistration:
    """Fetch a live pending registration, discarding it if it has expired."""
    pending = await session.get(PendingRegistration, registration_id)
    if not pending:
        raise NotFoundError("Registration not found")
    if is_expired(pending):
        await session.delete(pending)
        await session.commit()
        raise GoneError("Registration has expired", code=ErrorCodes.REGISTRATION_EXPIRED)
    return pending


def remaining_attempts(pending: PendingRegistration) -> int:
    return max(settings.pending_registration_max_attempts - pending.attempts, 0)


# === Routes ===

@router.post("/initiate-registration")
async def initiate_registration(
    payload: InitiateRegistrationRequest,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    info, phone, id_hash = check_registration_identity(payload.sa_id, payload.phone_number)
    await ensure_no_existing_subscriber(session, phone, id_hash)

    now = utcnow()
    # Stale rows for this phone no longer block a new attempt
    await session.execute(
        delete(PendingRegistration).where(
            PendingRegistration.phone_number == phone,
            PendingRegistration.expires_at <= now,
        )
    )
    live = await session.execute(
        select(PendingRegistration.id).where(PendingRegistration.phone_number == phone)
    )
    if live.first():
        raise ConflictError("A registration for this phone number is already in progress")

    pending = PendingRegistration(
        phone_number=phone,
        sa_id_hash=id_hash,
        sa_id_last4=payload.sa_id[-4:],
        date_of_birth=info.date_of_birth,
        gender=info.gender,
        is_sa_citizen=info.is_sa_citizen,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        expires_at=now + timedelta(minutes=settings.pending_registration_minutes),
        created_by=admin.username,
    )
    session.add(pending)
    await session.flush()

    code = await otp_service.issue_otp(session, phone)
    if not await sms.send_otp(phone, code):
        await session.rollback()
        logger.error(f"Assisted registration for {mask_phone(phone)} dropped: OTP not delivered")
        raise ServiceUnavailableError(
            "Failed to send verification code. Please try again.", code=ErrorCodes.SMS_FAILED
        )

    pending.otp_sent = True
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        event_data={
            "action": "assisted_registration_started",
            "phone": mask_phone(phone),
            "admin": admin.username,
        },
        request=request,
    )
    await session.commit()
    logger.info(f"Admin {admin.username} started registration {pending.id} for {mask_phone(phone)}")

    return {
        "success": True,
        "message": "Verification code sent to customer",
        "registrationId": pending.id,
        "phoneNumber": mask_phone(phone),
        "expiresAt": iso(pending.expires_at),
    }


@router.post("/verify-otp")
async def verify_pending_otp(
    payload: PendingOtpRequest,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    pending = await load_pending(session, payload.registration_id)
    if not pending.otp_sent:
        raise ValidationError("No verification code has been sent", code=ErrorCodes.OTP_NOT_SENT)
    if pending.otp_verified:
        raise ValidationError("Code already verified", code=ErrorCodes.OTP_ALREADY_VERIFIED)

    if not await otp_service.verify_otp(session, pending.phone_number, payload.otp):
        pending.attempts += 1
        if pending.attempts >= settings.pending_registration_max_attempts:
            await session.delete(pending)
            await session.commit()
            logger.warning(
                f"Registration {payload.registration_id} discarded after {pending.attempts} wrong codes"
            )
            raise RateLimitError(
                "Too many failed attempts. Please start again.",
                code=ErrorCodes.TOO_MANY_ATTEMPTS,
            )
        await session.commit()
        raise ValidationError(
            "Invalid verification code",
            code=ErrorCodes.INVALID_OTP,
            details={"remainingAttempts": remaining_attempts(pending)},
        )

    pending.otp_verified = True
    await session.commit()
    logger.info(f"Registration {pending.id} phone verified (admin {admin.username})")

    return {"success": True, "verified": True, "registrationId": pending.id}


@router.get("/verify-otp/{registration_id}")
async def pending_otp_status(
    registration_id: str,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    pending = await session.get(PendingRegistration, registration_id)
    if not pending:
        raise NotFoundError("Registration not found")

    return {
        "registrationId": pending.id,
        "otpSent": pending.otp_sent,
        "otpVerified": pending.otp_verified,
        "attempts": pending.attempts,
        "remainingAttempts": remaining_attempts(pending),
        "expiresAt": iso(pending.expires_at),
        "expired": is_expired(pending),
    }


@router.post("/complete-registration", status_code=status.HTTP_201_CREATED)
async def complete_pending_registration(
    payload: CompletePendingRequest,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    pending = await load_pending(session, payload.registration_id)
    if not pending.otp_verified:
        raise ValidationError("Phone number not verified", code=ErrorCodes.OTP_NOT_VERIFIED)
    await ensure_no_existing_subscriber(session, pending.phone_number, pending.sa_id_hash)

    now = utcnow()
    subscriber = Subscriber(
        phone_number=pending.phone_number,
        sa_id_hash=pending.sa_id_hash,
        sa_id_last4=pending.sa_id_last4,
        first_name=pending.first_name,
        last_name=pending.last_name,
        email=pending.email,
        date_of_birth=pending.date_of_birth,
        gender=pending.gender,
        is_sa_citizen=pending.is_sa_citizen,
        is_active=True,
        phone_verified=True,
        phone_verified_at=now,
        accepted_terms=True,
        accepted_privacy=True,
        terms_accepted_at=now,
        registered_by_admin=admin.username,
    )
    session.add(subscriber)
    await session.flush()
    await grant_signup_bonus(session, subscriber)

    for event_type, data in (
        (ComplianceEventType.USER_REGISTRATION, {"method": "admin_assisted", "admin": admin.username}),
        (ComplianceEventType.AGE_VERIFICATION, {"dateOfBirth": pending.date_of_birth.isoformat(), "verified": True}),
        (ComplianceEventType.ID_VERIFICATION, {"idNumber": mask_sa_id(pending.sa_id_last4), "verified": True}),
    ):
        await log_compliance_event(
            session,
            event_type=event_type,
            subscriber_id=subscriber.id,
            event_data=data,
            request=request,
        )

    await session.delete(pending)
    await session.commit()
    logger.info(f"Admin {admin.username} completed registration for subscriber {subscriber.id}")

    return {
        "success": True,
        "message": "Registration complete",
        "subscriber": serialize_subscriber(subscriber),
    }


@router.get("/pending-registrations")
async def list_pending_registrations(
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(PendingRegistration)
        .where(PendingRegistration.expires_at > utcnow())
        .order_by(PendingRegistration.created_at.desc())
    )

    return {
        "registrations": [
            {
                "id": p.id,
                "firstName": p.first_name,
                "lastName": p.last_name,
                "phoneNumber": mask_phone(p.phone_number),
                "otpSent": p.otp_sent,
                "otpVerified": p.otp_verified,
                "attempts": p.attempts,
                "createdBy": p.created_by,
                "expiresAt": iso(p.expires_at),
                "createdAt": iso(p.created_at),
            }
            for p in result.scalars().all()
        ]
    }
