"""
Admin reporting: dashboard statistics, signup trends, user export, and a
health check.

Time bucketing is done in Python over the selected rows, so the results do
not depend on the database's date functions.
"""

import csv
import io
import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Iterable, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..compliance import log_compliance_event
from ..core.config import get_settings
from ..core.db import get_session
from ..core.request_context import AdminContext, get_current_admin
from ..core.responses import iso, money
from ..models import (
    ComplianceEvent,
    ComplianceEventType,
    Subscriber,
    ensure_utc,
    utcnow,
)
from ..rate_limiter import get_rate_limit_stats
from ..validation import mask_phone, mask_sa_id

router = APIRouter(prefix="/api/admin", tags=["admin-stats"])
logger = logging.getLogger(__name__)

REGION_PREFIXES = {
    "+2711": "Johannesburg",
    "+2721": "Cape Town",
    "+2731": "Durban",
    "+2712": "Pretoria",
    "+2741": "Port Elizabeth",
    "+2751": "Bloemfontein",
    "+2743": "East London",
    "+2718": "Rustenburg",
    "+2713": "Nelspruit",
    "+2717": "Secunda",
}
OTHER_REGIONS = "Other Regions"

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────

def percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def region_for_phone(phone: str) -> str:
    return REGION_PREFIXES.get(phone[:5], OTHER_REGIONS)


def bucket_key(value: date, granularity: str) -> str:
    if granularity == "week":
        return (value - timedelta(days=value.weekday())).isoformat()
    if granularity == "month":
        return value.strftime("%Y-%m")
    return value.isoformat()


def bucket_keys(start: date, end: date, granularity: str) -> list[str]:
    """Every bucket between start and end inclusive, in order."""
    keys: list[str] = []
    current = start
    while current <= end:
        key = bucket_key(current, granularity)
        if not keys or keys[-1] != key:
            keys.append(key)
        current += timedelta(days=1)
    return keys


def count_by_day(values: Iterable[Optional[datetime]]) -> Counter:
    counts: Counter = Counter()
    for value in values:
        if value is not None:
            counts[ensure_utc(value).date()] += 1
    return counts


def registration_status(subscriber: Subscriber) -> str:
    if subscriber.registration_complete:
        return "completed"
    if subscriber.phone_verified:
        return "verified"
    return "pending"


async def load_live_subscribers(session: AsyncSession, *filters) -> list[Subscriber]:
    result = await session.execute(
        select(Subscriber)
        .where(Subscriber.deleted_at.is_(None), *filters)
        .order_by(Subscriber.created_at.desc())
    )
    return list(result.scalars().all())


# ────────────────────────────────────────────────────────────────
# Routes
# ────────────────────────────────────────────────────────────────

@router.get("/dashboard-stats")
async def dashboard_stats(
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    subscribers = await load_live_subscribers(session)
    now = utcnow()
    today = now.date()

    total = len(subscribers)
    verified = sum(1 for s in subscribers if s.phone_verified)
    completed = sum(1 for s in subscribers if s.registration_complete)
    active = sum(1 for s in subscribers if s.is_active)

    def signups_since(delta: timedelta) -> int:
        cutoff = now - delta
        return sum(1 for s in subscribers if ensure_utc(s.created_at) >= cutoff)

    signup_days = count_by_day(s.created_at for s in subscribers)
    verification_days = count_by_day(s.phone_verified_at for s in subscribers)

    week_ago = now - timedelta(days=7)
    login_result = await session.execute(
        select(ComplianceEvent.created_at).where(
            ComplianceEvent.event_type == ComplianceEventType.LOGIN_ATTEMPT,
            ComplianceEvent.created_at >= week_ago,
        )
    )
    login_days = count_by_day(login_result.scalars().all())

    regions = Counter(region_for_phone(s.phone_number) for s in subscribers)

    return {
        "totalUsers": total,
        "verifiedUsers": verified,
        "activeUsers": active,
        "dailySignups": signups_since(timedelta(days=1)),
        "weeklySignups": signups_since(timedelta(days=7)),
        "monthlySignups": signups_since(timedelta(days=30)),
        "registrationFunnel": {
            "registered": total,
            "phoneVerified": verified,
            "completed": completed,
            "verificationRate": percentage(verified, total),
            "completionRate": percentage(completed, total),
        },
        "recentRegistrations": [
            {
                "id": s.id,
                "name": s.full_name,
                "phoneNumber": mask_phone(s.phone_number),
                "phoneVerified": s.phone_verified,
                "isActive": s.is_active,
                "createdAt": iso(s.created_at),
            }
            for s in subscribers[:10]
        ],
        "dailyTrend": [
            {"date": day.isoformat(), "count": signup_days.get(day, 0)}
            for day in (today - timedelta(days=offset) for offset in range(29, -1, -1))
        ],
        "geographicDistribution": [
            {"region": region, "count": count, "percentage": percentage(count, total)}
            for region, count in regions.most_common()
        ],
        "activityTrends": [
            {
                "date": day.isoformat(),
                "registrations": signup_days.get(day, 0),
                "verifications": verification_days.get(day, 0),
                "logins": login_days.get(day, 0),
            }
            for day in (today - timedelta(days=offset) for offset in range(6, -1, -1))
        ],
        "rateLimiter": get_rate_limit_stats(),
        "generatedAt": now.isoformat(),
    }


@router.get("/signup-trends")
async def signup_trends(
    period: Literal["7d", "30d", "90d", "1y"] = "30d",
    granularity: Literal["day", "week", "month"] = "day",
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    now = utcnow()
    start = now - timedelta(days=PERIOD_DAYS[period] - 1)
    start = start.replace(hour=0, minute=0, second=0, microsecond=0)
    subscribers = await load_live_subscribers(session, Subscriber.created_at >= start)

    keys = bucket_keys(start.date(), now.date(), granularity)
    buckets = {key: {"period": key, "signups": 0, "verified": 0, "completed": 0} for key in keys}
    for s in subscribers:
        bucket = buckets.get(bucket_key(ensure_utc(s.created_at).date(), granularity))
        if bucket is None:
            continue
        bucket["signups"] += 1
        if s.phone_verified:
            bucket["verified"] += 1
        if s.registration_complete:
            bucket["completed"] += 1

    total_signups = len(subscribers)
    total_verified = sum(b["verified"] for b in buckets.values())
    total_completed = sum(b["completed"] for b in buckets.values())

    return {
        "period": period,
        "granularity": granularity,
        "trends": list(buckets.values()),
        "summary": {
            "totalSignups": total_signups,
            "totalVerified": total_verified,
            "totalCompleted": total_completed,
            "averagePerPeriod": round(total_signups / len(keys), 1) if keys else 0.0,
            "verificationRate": percentage(total_verified, total_signups),
            "completionRate": percentage(total_completed, total_signups),
        },
    }


EXPORT_COLUMNS = [
    "id",
    "firstName",
    "lastName",
    "phoneNumber",
    "email",
    "maskedSaId",
    "isActive",
    "phoneVerified",
    "acceptedTerms",
    "registrationStatus",
    "daysSinceRegistration",
    "tokenBalance",
    "createdAt",
]


@router.get("/export-users")
async def export_users(
    request: Request,
    format: Literal["csv", "json"] = "csv",
    include_compliance: bool = Query(False, alias="includeCompliance"),
    verified: Optional[bool] = None,
    active_status: Optional[Literal["active", "inactive"]] = Query(None, alias="activeStatus"),
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    filters = []
    if verified is not None:
        filters.append(Subscriber.phone_verified.is_(verified))
    if active_status:
        filters.append(Subscriber.is_active.is_(active_status == "active"))
    subscribers = await load_live_subscribers(session, *filters)

    events_by_subscriber: dict[str, list[dict]] = {}
    if include_compliance and subscribers:
        result = await session.execute(
            select(ComplianceEvent)
            .where(ComplianceEvent.subscriber_id.in_([s.id for s in subscribers]))
            .order_by(ComplianceEvent.created_at)
        )
        for event in result.scalars().all():
            events_by_subscriber.setdefault(event.subscriber_id, []).append(
                {
                    "eventType": event.event_type.value,
                    "eventData": event.event_data,
                    "createdAt": iso(event.created_at),
                }
            )

    now = utcnow()
    rows = []
    for s in subscribers:
        row = {
            "id": s.id,
            "firstName": s.first_name,
            "lastName": s.last_name,
            "phoneNumber": s.phone_number,
            "email": s.email or "",
            "maskedSaId": mask_sa_id(s.sa_id_last4),
            "isActive": s.is_active,
            "phoneVerified": s.phone_verified,
            "acceptedTerms": s.accepted_terms,
            "registrationStatus": registration_status(s),
            "daysSinceRegistration": (now - ensure_utc(s.created_at)).days,
            "tokenBalance": money(s.token_balance),
            "createdAt": iso(s.created_at),
        }
        if include_compliance:
            row["complianceEvents"] = events_by_subscriber.get(s.id, [])
        rows.append(row)

    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_ACCESS,
        event_data={
            "action": "users_exported",
            "format": format,
            "count": len(rows),
            "includeCompliance": include_compliance,
            "admin": admin.username,
        },
        request=request,
    )
    await session.commit()
    logger.info(f"Admin {admin.username} exported {len(rows)} users as {format}")

    if format == "json":
        return {"exportedAt": now.isoformat(), "count": len(rows), "users": rows}

    buffer = io.StringIO()
    columns = EXPORT_COLUMNS + (["complianceEventCount"] if include_compliance else [])
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        if include_compliance:
            row = {**row, "complianceEventCount": len(row["complianceEvents"])}
        writer.writerow(row)

    filename = f"users-export-{now.date().isoformat()}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    settings = get_settings()
    checks = {
        "jwtSecret": bool(settings.jwt_secret),
        "adminCredentials": settings.admin_configured,
        "smsProvider": settings.sms_configured or not settings.is_production,
    }

    try:
        await session.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        checks["database"] = False
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "checks": checks, "timestamp": utcnow().isoformat()},
        )

    status_value = "healthy" if all(checks.values()) else "warning"
    return {
        "status": status_value,
        "checks": checks,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
    }
