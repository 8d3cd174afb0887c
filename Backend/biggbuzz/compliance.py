import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ComplianceEvent, ComplianceEventType

logger = logging.getLogger(__name__)


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def log_compliance_event(
    session: AsyncSession,
    *,
    event_type: ComplianceEventType,
    subscriber_id: Optional[str] = None,
    event_data: Optional[dict] = None,
    request: Optional[Request] = None,
) -> ComplianceEvent:
    """
    Record a regulated action.

    IMPORTANT: event_data must never carry a raw ID number. Phone numbers
    should be masked.

    Example:
        await log_compliance_event(
            session,
            event_type=ComplianceEventType.ORDER_PLACED,
            subscriber_id=subscriber.id,
            event_data={"orderNumber": order.order_number},
            request=request,
        )
    """
    event = ComplianceEvent(
        subscriber_id=subscriber_id,
        event_type=event_type,
        event_data=event_data,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent") if request is not None else None,
    )
    session.add(event)
    await session.flush()

    logger.debug(f"Compliance event {event_type.value} for subscriber {subscriber_id}")
    return event
