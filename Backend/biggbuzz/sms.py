"""
SMS delivery for verification codes.

Providers are tried in order:
    1. Clickatell (HTTP API, retried with linear backoff)
    2. Twilio Programmable SMS
    3. Development fallback: the message is logged instead of sent

send_sms() never raises; callers check the boolean result.
"""

import asyncio
import logging

import httpx
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .core.config import get_settings
from .validation import mask_phone

logger = logging.getLogger(__name__)

CLICKATELL_URL = "https://platform.clickatell.com/v1/message"
CLICKATELL_MAX_ATTEMPTS = 3
CLICKATELL_BACKOFF_SECONDS = 1.0
NON_RETRYABLE_STATUSES = {400, 401, 403}


def build_otp_message(code: str) -> str:
    settings = get_settings()
    return (
        f"Your Bigg Buzz verification code is: {code}. "
        f"Valid for {settings.otp_ttl_minutes} minutes."
    )


async def _send_via_clickatell(to_phone: str, body: str) -> bool:
    settings = get_settings()
    payload = {
        "messages": [
            {"channel": settings.sms_channel, "to": to_phone.lstrip("+"), "content": body}
        ]
    }
    headers = {
        "Authorization": settings.clickatell_api_key,
        "Content-Type": "application/json",
        "Accept": "application/json",
    }

    async with httpx.AsyncClient(timeout=10.0) as client:
        for attempt in range(1, CLICKATELL_MAX_ATTEMPTS + 1):
            try:
                response = await client.post(CLICKATELL_URL, json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(f"Clickatell attempt {attempt} failed: {e}")
            else:
                if response.is_success:
                    logger.info(f"SMS sent via Clickatell to {mask_phone(to_phone)}")
                    return True
                logger.warning(
                    f"Clickatell attempt {attempt} returned {response.status_code}: {response.text[:200]}"
                )
                if response.status_code in NON_RETRYABLE_STATUSES:
                    return False

            if attempt < CLICKATELL_MAX_ATTEMPTS:
                await asyncio.sleep(CLICKATELL_BACKOFF_SECONDS * attempt)

    return False


def _send_via_twilio(to_phone: str, body: str) -> bool:
    settings = get_settings()
    try:
        client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        message = client.messages.create(body=body, from_=settings.twilio_from_number, to=to_phone)
        logger.info(f"SMS sent via Twilio to {mask_phone(to_phone)}. SID: {message.sid}")
        return True
    except TwilioRestException as e:
        logger.error(f"Twilio API error sending SMS to {mask_phone(to_phone)}: {e.code} - {e.msg}")
        return False


async def send_sms(to_phone: str, body: str) -> bool:
    """
    Send an SMS through the first configured provider.

    Args:
        to_phone: Phone number in +27 form
        body: Message text

    Returns:
        True if a provider accepted the message (or it was logged in development)
    """
    settings = get_settings()
    try:
        if settings.clickatell_api_key:
            if await _send_via_clickatell(to_phone, body):
                return True
            logger.warning("Clickatell delivery failed, trying Twilio")

        if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number:
            return _send_via_twilio(to_phone, body)

        if not settings.is_production and not settings.sms_configured:
            logger.info(f"[DEV SMS] to {mask_phone(to_phone)}: {body}")
            return True

        logger.error(f"No SMS provider could deliver to {mask_phone(to_phone)}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error sending SMS to {mask_phone(to_phone)}: {e}")
        return False


async def send_otp(to_phone: str, code: str) -> bool:
    return await send_sms(to_phone, build_otp_message(code))
