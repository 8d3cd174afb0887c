import logging
from collections import Counter
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..accounts import serialize_subscriber
from ..compliance import log_compliance_event
from ..core.db import get_session
from ..core.errors import ValidationError
from ..core.request_context import SubscriberContext, get_current_subscriber
from ..core.responses import CamelModel, iso, money, pagination_meta
from ..models import (
    ComplianceEventType,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    TokenTransaction,
    TokenTransactionType,
    ensure_utc,
    utcnow,
)
from ..validation import sanitize_text

router = APIRouter(prefix="/api/subscribers", tags=["subscribers"])
logger = logging.getLogger(__name__)

# Orders that count toward "spent"
SPENT_STATUSES = (
    OrderStatus.DELIVERED,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
)


class UpdateProfileRequest(CamelModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @field_validator("first_name", "last_name")
    @classmethod
    def clean_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        cleaned = sanitize_text(v)
        if not cleaned:
            raise ValueError("Name cannot be empty")
        return cleaned


@router.get("/profile")
async def get_profile(ctx: SubscriberContext = Depends(get_current_subscriber)):
    return {"success": True, "profile": serialize_subscriber(ctx.subscriber)}


@router.patch("/profile")
async def update_profile(
    payload: UpdateProfileRequest,
    request: Request,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationError("No profile fields to update")

    subscriber = ctx.subscriber
    for field, value in changes.items():
        setattr(subscriber, field, value)

    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=subscriber.id,
        event_data={"action": "profile_updated", "fields": sorted(changes)},
        request=request,
    )
    await session.commit()
    logger.info(f"Subscriber {subscriber.id} updated profile fields {sorted(changes)}")

    return {"success": True, "profile": serialize_subscriber(subscriber)}


@router.get("/token-transactions")
async def list_token_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    tx_type: Optional[TokenTransactionType] = Query(None, alias="type"),
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    filters = [TokenTransaction.subscriber_id == ctx.subscriber_id]
    if tx_type:
        filters.append(TokenTransaction.type == tx_type)

    total = await session.scalar(select(func.count(TokenTransaction.id)).where(*filters))
    result = await session.execute(
        select(TokenTransaction, Order)
        .outerjoin(Order, Order.id == TokenTransaction.order_id)
        .where(*filters)
        .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )

    transactions = []
    for tx, order in result.all():
        transactions.append(
            {
                "id": tx.id,
                "type": tx.type.value,
                "amount": money(tx.amount),
                "balanceBefore": money(tx.balance_before),
                "balanceAfter": money(tx.balance_after),
                "status": tx.status.value,
                "description": tx.description,
                "reference": tx.reference,
                "metadata": tx.metadata_json or {},
                "createdAt": iso(tx.created_at),
                "order": (
                    {"id": order.id, "orderNumber": order.order_number, "status": order.status.value}
                    if order
                    else None
                ),
            }
        )

    return {
        "transactions": transactions,
        "currentBalance": money(ctx.subscriber.token_balance),
        "pagination": pagination_meta(page, limit, total or 0),
    }


@router.get("/dashboard-stats")
async def dashboard_stats(
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    subscriber = ctx.subscriber
    result = await session.execute(select(Order).where(Order.subscriber_id == subscriber.id))
    orders = result.scalars().all()

    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    spent_orders = [o for o in orders if o.status in SPENT_STATUSES]
    delivered = [o for o in orders if o.status == OrderStatus.DELIVERED]
    this_month = [o for o in orders if ensure_utc(o.created_at) >= month_start]

    total_spent = sum((o.total for o in spent_orders), Decimal("0"))
    this_month_spent = sum(
        (o.total for o in this_month if o.status in SPENT_STATUSES), Decimal("0")
    )
    average = total_spent / len(delivered) if delivered else Decimal("0")

    favorite = "None yet"
    if orders:
        category_rows = await session.execute(
            select(Product.category, OrderItem.quantity)
            .select_from(OrderItem)
            .join(Product, Product.id == OrderItem.product_id)
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.subscriber_id == subscriber.id)
        )
        counts: Counter = Counter()
        for category, quantity in category_rows.all():
            counts[category] += quantity
        if counts:
            favorite = counts.most_common(1)[0][0].value.capitalize()

    return {
        "totalOrders": len(orders),
        "deliveredOrders": len(delivered),
        "totalSpent": money(total_spent),
        "thisMonthSpent": money(this_month_spent),
        "thisMonthOrders": len(this_month),
        "averageOrderValue": money(average),
        "favoriteCategory": favorite,
        "memberSince": iso(subscriber.created_at),
        "currentBalance": money(subscriber.token_balance),
    }
