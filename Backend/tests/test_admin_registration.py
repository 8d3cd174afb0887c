"""
Admin-assisted (in-store) registration flow.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from biggbuzz import sms as sms_module
from biggbuzz.models import (
    ComplianceEvent,
    ComplianceEventType,
    PendingRegistration,
    Subscriber,
    utcnow,
)

from conftest import ADULT_ID, MINOR_ID, TEST_OTP, make_subscriber

CUSTOMER = {
    "saId": ADULT_ID,
    "phoneNumber": "0821234567",
    "firstName": "Thandi",
    "lastName": "Nkosi",
}


async def initiate(client: AsyncClient, headers: dict) -> str:
    response = await client.post("/api/admin/initiate-registration", json=CUSTOMER, headers=headers)
    assert response.status_code == 200
    return response.json()["registrationId"]


# ============================================================================
# INITIATE
# ============================================================================

@pytest.mark.asyncio
async def test_initiate_sends_code(client: AsyncClient, session_factory, admin_headers, sent_sms):
    """
    Test: POST /api/admin/initiate-registration => pending row, OTP sent, phone masked
    """
    response = await client.post("/api/admin/initiate-registration", json=CUSTOMER, headers=admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["phoneNumber"] == "+27***67"
    assert data["expiresAt"]
    assert sent_sms == [("+27821234567", TEST_OTP)]

    async with session_factory() as session:
        pending = await session.get(PendingRegistration, data["registrationId"])
        assert pending.otp_sent is True
        assert pending.created_by == "admin"
        assert pending.sa_id_last4 == "0085"


@pytest.mark.asyncio
async def test_initiate_rejects_minor(client: AsyncClient, admin_headers):
    """
    Test: initiate with an under-18 ID => 400 UNDERAGE
    """
    response = await client.post(
        "/api/admin/initiate-registration", json={**CUSTOMER, "saId": MINOR_ID}, headers=admin_headers
    )

    assert response.status_code == 400
    assert response.json()["error"] == "UNDERAGE"


@pytest.mark.asyncio
async def test_initiate_conflicts(client: AsyncClient, session_factory, admin_headers):
    """
    Test: second live registration for a phone => 409; existing subscriber => 409 USER_EXISTS
    """
    await initiate(client, admin_headers)

    again = await client.post("/api/admin/initiate-registration", json=CUSTOMER, headers=admin_headers)
    assert again.status_code == 409

    await make_subscriber(session_factory, phone="+27831234567", sa_id="8505205123086")
    existing = await client.post(
        "/api/admin/initiate-registration",
        json={**CUSTOMER, "saId": "8505205123086", "phoneNumber": "0831234567"},
        headers=admin_headers,
    )
    assert existing.status_code == 409
    assert existing.json()["error"] == "USER_EXISTS"


@pytest.mark.asyncio
async def test_initiate_sms_failure(client: AsyncClient, session_factory, admin_headers, monkeypatch):
    """
    Test: SMS delivery fails => 500 SMS_FAILED and no pending row kept
    """
    async def failing_send(to_phone, code):
        return False

    monkeypatch.setattr(sms_module, "send_otp", failing_send)
    response = await client.post("/api/admin/initiate-registration", json=CUSTOMER, headers=admin_headers)

    assert response.status_code == 500
    assert response.json()["error"] == "SMS_FAILED"
    async with session_factory() as session:
        assert (await session.execute(select(PendingRegistration))).first() is None


# ============================================================================
# VERIFY
# ============================================================================

@pytest.mark.asyncio
async def test_verify_wrong_code_counts_attempts(client: AsyncClient, admin_headers):
    """
    Test: wrong code => 400 with remainingAttempts; status endpoint reflects it
    """
    registration_id = await initiate(client, admin_headers)

    response = await client.post(
        "/api/admin/verify-otp", json={"registrationId": registration_id, "otp": "000000"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_OTP"
    assert response.json()["details"] == {"remainingAttempts": 4}

    status = (await client.get(f"/api/admin/verify-otp/{registration_id}", headers=admin_headers)).json()
    assert status["attempts"] == 1
    assert status["remainingAttempts"] == 4
    assert status["otpVerified"] is False
    assert status["expired"] is False


@pytest.mark.asyncio
async def test_verify_too_many_attempts_discards(client: AsyncClient, session_factory, admin_headers):
    """
    Test: fifth wrong code => 429 TOO_MANY_ATTEMPTS and the pending row is gone
    """
    registration_id = await initiate(client, admin_headers)
    body = {"registrationId": registration_id, "otp": "000000"}

    for _ in range(4):
        assert (await client.post("/api/admin/verify-otp", json=body, headers=admin_headers)).status_code == 400

    response = await client.post("/api/admin/verify-otp", json=body, headers=admin_headers)
    assert response.status_code == 429
    assert response.json()["error"] == "TOO_MANY_ATTEMPTS"

    async with session_factory() as session:
        assert await session.get(PendingRegistration, registration_id) is None


@pytest.mark.asyncio
async def test_verify_success_then_already_verified(client: AsyncClient, admin_headers):
    """
    Test: correct code => verified; repeating => 400 OTP_ALREADY_VERIFIED
    """
    registration_id = await initiate(client, admin_headers)
    body = {"registrationId": registration_id, "otp": TEST_OTP}

    response = await client.post("/api/admin/verify-otp", json=body, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["verified"] is True

    again = await client.post("/api/admin/verify-otp", json=body, headers=admin_headers)
    assert again.status_code == 400
    assert again.json()["error"] == "OTP_ALREADY_VERIFIED"


@pytest.mark.asyncio
async def test_expired_registration_is_gone(client: AsyncClient, session_factory, admin_headers):
    """
    Test: verify after expiry => 410 REGISTRATION_EXPIRED and row removed
    """
    registration_id = await initiate(client, admin_headers)
    async with session_factory() as session:
        pending = await session.get(PendingRegistration, registration_id)
        pending.expires_at = utcnow() - timedelta(minutes=1)
        await session.commit()

    response = await client.post(
        "/api/admin/verify-otp", json={"registrationId": registration_id, "otp": TEST_OTP}, headers=admin_headers
    )
    assert response.status_code == 410
    assert response.json()["error"] == "REGISTRATION_EXPIRED"

    missing = await client.get(f"/api/admin/verify-otp/{registration_id}", headers=admin_headers)
    assert missing.status_code == 404


# ============================================================================
# COMPLETE
# ============================================================================

@pytest.mark.asyncio
async def test_complete_requires_verification(client: AsyncClient, admin_headers):
    """
    Test: complete before verify => 400 OTP_NOT_VERIFIED
    """
    registration_id = await initiate(client, admin_headers)

    response = await client.post(
        "/api/admin/complete-registration", json={"registrationId": registration_id}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.json()["error"] == "OTP_NOT_VERIFIED"


@pytest.mark.asyncio
async def test_complete_creates_active_subscriber(client: AsyncClient, session_factory, admin_headers):
    """
    Test: initiate -> verify -> complete => 201, active subscriber with bonus and audit trail
    """
    registration_id = await initiate(client, admin_headers)
    await client.post(
        "/api/admin/verify-otp", json={"registrationId": registration_id, "otp": TEST_OTP}, headers=admin_headers
    )

    response = await client.post(
        "/api/admin/complete-registration", json={"registrationId": registration_id}, headers=admin_headers
    )

    assert response.status_code == 201
    subscriber = response.json()["subscriber"]
    assert subscriber["isActive"] is True
    assert subscriber["phoneVerified"] is True
    assert subscriber["tokenBalance"] == 50.0

    async with session_factory() as session:
        row = (await session.execute(select(Subscriber))).scalar_one()
        assert row.registered_by_admin == "admin"
        assert row.accepted_terms is True
        assert row.token_balance == Decimal("50.00")
        assert await session.get(PendingRegistration, registration_id) is None

        events = (
            await session.execute(select(ComplianceEvent).where(ComplianceEvent.subscriber_id == row.id))
        ).scalars().all()
        assert {e.event_type for e in events} == {
            ComplianceEventType.USER_REGISTRATION,
            ComplianceEventType.AGE_VERIFICATION,
            ComplianceEventType.ID_VERIFICATION,
        }


@pytest.mark.asyncio
async def test_pending_list_masks_phone(client: AsyncClient, admin_headers):
    """
    Test: GET /api/admin/pending-registrations => live rows with masked phones
    """
    registration_id = await initiate(client, admin_headers)

    response = await client.get("/api/admin/pending-registrations", headers=admin_headers)

    assert response.status_code == 200
    rows = response.json()["registrations"]
    assert [r["id"] for r in rows] == [registration_id]
    assert rows[0]["phoneNumber"] == "+27***67"
    assert rows[0]["createdBy"] == "admin"
