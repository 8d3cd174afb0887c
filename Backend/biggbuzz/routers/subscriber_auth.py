"""
Subscriber authentication: registration, phone verification by OTP, and
passwordless login.

Flow:
    1. POST /register               -> inactive account + OTP by SMS
    2. POST /verify-otp             -> phone verified
    3. POST /complete-registration  -> terms accepted, account active,
                                       welcome bonus, session cookie
    4. POST /send-otp + POST /login -> later sign-ins
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import Field, field_validator
from sqlalchemy import select
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
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from ..core.request_context import SubscriberContext, get_current_subscriber
from ..core.responses import CamelModel, ErrorCodes
from ..models import ComplianceEventType, Subscriber, utcnow
from ..rate_limiter import rate_limit_dependency
from ..security import SUBSCRIBER_COOKIE, create_subscriber_token
from ..validation import mask_phone, normalize_sa_phone, sanitize_text

router = APIRouter(prefix="/api/auth/subscriber", tags=["subscriber-auth"])
logger = logging.getLogger(__name__)
settings = get_settings()

AUTH_WINDOW_SECONDS = 15 * 60
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# === Request Models ===

class RegisterRequest(CamelModel):
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


class PhoneRequest(CamelModel):
    phone_number: str = Field(..., min_length=10, max_length=20)


class VerifyOtpRequest(CamelModel):
    phone_number: str = Field(..., min_length=10, max_length=20)
    otp: str = Field(..., pattern=r"^\d{6}$")


class CompleteRegistrationRequest(CamelModel):
    phone_number: str = Field(..., min_length=10, max_length=20)
    accept_terms: bool
    accept_privacy: bool


class LoginRequest(CamelModel):
    phone_number: str = Field(..., min_length=10, max_length=20)
    otp: str = Field(..., pattern=r"^\d{4,6}$")


# === Helpers ===

def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SUBSCRIBER_COOKIE,
        token,
        max_age=settings.subscriber_token_days * 24 * 3600,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


async def get_subscriber_by_phone(session: AsyncSession, phone: str) -> Optional[Subscriber]:
    result = await session.execute(
        select(Subscriber).where(Subscriber.phone_number == phone, Subscriber.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def issue_and_send_otp(session: AsyncSession, phone: str) -> None:
    code = await otp_service.issue_otp(session, phone)
    if not await sms.send_otp(phone, code):
        raise ServiceUnavailableError(
            "Failed to send verification code. Please try again.", code=ErrorCodes.SMS_FAILED
        )


# === Routes ===

@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit_dependency(5, AUTH_WINDOW_SECONDS))],
)
async def register(
    payload: RegisterRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    info, phone, id_hash = check_registration_identity(payload.sa_id, payload.phone_number)
    await ensure_no_existing_subscriber(session, phone, id_hash)

    subscriber = Subscriber(
        phone_number=phone,
        sa_id_hash=id_hash,
        sa_id_last4=payload.sa_id[-4:],
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        date_of_birth=info.date_of_birth,
        gender=info.gender,
        is_sa_citizen=info.is_sa_citizen,
        is_active=False,
        phone_verified=False,
    )
    session.add(subscriber)
    await session.flush()

    try:
        await issue_and_send_otp(session, phone)
    except ServiceUnavailableError:
        # Nothing is kept when the code can't be delivered
        await session.rollback()
        logger.error(f"Registration for {mask_phone(phone)} rolled back: OTP not delivered")
        raise

    await log_compliance_event(
        session,
        event_type=ComplianceEventType.USER_REGISTRATION,
        subscriber_id=subscriber.id,
        event_data={"phone": mask_phone(phone), "age": info.age, "method": "self_service"},
        request=request,
    )
    await session.commit()
    logger.info(f"Subscriber {subscriber.id} registered, awaiting phone verification")

    return {
        "success": True,
        "message": "Registration successful. Please verify your phone number.",
        "subscriberId": subscriber.id,
        "phoneNumber": mask_phone(phone),
    }


@router.post(
    "/send-otp",
    dependencies=[Depends(rate_limit_dependency(settings.otp_send_limit, settings.otp_send_window_seconds))],
)
async def send_otp(payload: PhoneRequest, session: AsyncSession = Depends(get_session)):
    phone = normalize_sa_phone(payload.phone_number)
    subscriber = await get_subscriber_by_phone(session, phone)
    if not subscriber:
        raise NotFoundError("No account found for this phone number")
    if not subscriber.is_active and subscriber.registration_complete:
        raise AuthorizationError("Account is deactivated", code=ErrorCodes.ACCOUNT_INACTIVE)

    await issue_and_send_otp(session, phone)
    await session.commit()

    return {
        "success": True,
        "message": "Verification code sent",
        "expiresIn": settings.otp_ttl_minutes * 60,
    }


@router.post("/verify-otp")
async def verify_otp(payload: VerifyOtpRequest, session: AsyncSession = Depends(get_session)):
    phone = normalize_sa_phone(payload.phone_number)
    subscriber = await get_subscriber_by_phone(session, phone)
    if not subscriber:
        raise NotFoundError("No account found for this phone number")

    if not await otp_service.verify_otp(session, phone, payload.otp):
        raise ValidationError("Invalid or expired verification code", code=ErrorCodes.INVALID_OTP)

    if not subscriber.phone_verified:
        subscriber.phone_verified = True
        subscriber.phone_verified_at = utcnow()
    await session.commit()

    return {
        "success": True,
        "verified": True,
        "message": "Phone number verified",
        "needsTermsAcceptance": not subscriber.registration_complete,
    }


@router.post("/complete-registration")
async def complete_registration(
    payload: CompleteRegistrationRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    if not (payload.accept_terms and payload.accept_privacy):
        raise ValidationError(
            "You must accept the terms of service and privacy policy",
            code=ErrorCodes.TERMS_REQUIRED,
        )

    phone = normalize_sa_phone(payload.phone_number)
    subscriber = await get_subscriber_by_phone(session, phone)
    if not subscriber:
        raise NotFoundError("No account found for this phone number")
    if not subscriber.phone_verified:
        raise AuthorizationError("Phone number not verified", code=ErrorCodes.PHONE_NOT_VERIFIED)
    if subscriber.registration_complete:
        raise ValidationError("Registration already completed", code=ErrorCodes.ALREADY_COMPLETED)

    subscriber.accepted_terms = True
    subscriber.accepted_privacy = True
    subscriber.terms_accepted_at = utcnow()
    subscriber.is_active = True
    subscriber.last_login_at = utcnow()
    await grant_signup_bonus(session, subscriber)
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=subscriber.id,
        event_data={"action": "registration_completed", "termsAccepted": True},
        request=request,
    )
    await session.commit()

    token = create_subscriber_token(subscriber.id, subscriber.phone_number)
    set_session_cookie(response, token)
    logger.info(f"Subscriber {subscriber.id} completed registration")

    return {
        "success": True,
        "message": "Registration complete",
        "token": token,
        "subscriber": serialize_subscriber(subscriber),
    }


@router.post("/login", dependencies=[Depends(rate_limit_dependency(10, AUTH_WINDOW_SECONDS))])
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    phone = normalize_sa_phone(payload.phone_number)
    if not await otp_service.verify_otp(session, phone, payload.otp):
        logger.warning(f"Failed login for {mask_phone(phone)}")
        raise AuthenticationError("Invalid or expired verification code", code=ErrorCodes.INVALID_OTP)

    subscriber = await get_subscriber_by_phone(session, phone)
    if not subscriber:
        raise NotFoundError("No account found for this phone number")
    if not subscriber.is_active:
        raise AuthorizationError("Account is not active", code=ErrorCodes.ACCOUNT_INACTIVE)
    if not subscriber.phone_verified:
        raise AuthorizationError("Phone number not verified", code=ErrorCodes.PHONE_NOT_VERIFIED)
    if not subscriber.registration_complete:
        raise ValidationError(
            "Please complete your registration first", code=ErrorCodes.PROFILE_INCOMPLETE
        )

    subscriber.last_login_at = utcnow()
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.LOGIN_ATTEMPT,
        subscriber_id=subscriber.id,
        event_data={"success": True, "method": "otp"},
        request=request,
    )
    await session.commit()

    token = create_subscriber_token(subscriber.id, subscriber.phone_number)
    set_session_cookie(response, token)
    logger.info(f"Subscriber {subscriber.id} signed in")

    return {"success": True, "token": token, "subscriber": serialize_subscriber(subscriber)}


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(SUBSCRIBER_COOKIE, path="/")
    return {"success": True, "message": "Logged out"}


@router.get("/me")
async def me(ctx: SubscriberContext = Depends(get_current_subscriber)):
    return {"success": True, "subscriber": serialize_subscriber(ctx.subscriber)}
