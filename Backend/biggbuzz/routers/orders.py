"""
Subscriber orders: listing, checkout, detail, and cancellation.

Checkout is a single database transaction: the order and its items are
created, stock is decremented, the token balance is debited and the cart
is emptied together, or not at all.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..commerce import (
    adjust_stock,
    clear_cart,
    compute_order_totals,
    decode_variant,
    ensure_cart_stock,
    generate_order_number,
    get_or_create_cart,
    load_cart_lines,
    record_status_change,
    reverse_order,
)
from ..compliance import log_compliance_event
from ..core.db import get_session
from ..core.errors import InsufficientBalanceError, NotFoundError, ValidationError
from ..core.request_context import SubscriberContext, get_current_subscriber
from ..core.responses import CamelModel, ErrorCodes, iso, money, pagination_meta
from ..ledger import apply_token_transaction
from ..models import (
    ComplianceEventType,
    DeliveryMethod,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    TokenTransaction,
    TokenTransactionType,
)
from ..validation import sanitize_text

router = APIRouter(prefix="/api/orders", tags=["orders"])
logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "createdAt": Order.created_at,
    "total": Order.total,
    "status": Order.status,
}


# === Request Models ===

class DeliveryAddress(CamelModel):
    street: str = Field(..., min_length=5, max_length=100)
    city: str = Field(..., min_length=2, max_length=50)
    province: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., pattern=r"^\d{4}$")
    country: str = Field("South Africa", min_length=2, max_length=50)

    @field_validator("street", "city", "province", "country")
    @classmethod
    def clean(cls, v: str) -> str:
        return sanitize_text(v)


class CheckoutRequest(CamelModel):
    delivery_address: DeliveryAddress
    delivery_method: DeliveryMethod = DeliveryMethod.STANDARD
    notes: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = PaymentMethod.TOKENS


# === Serialization ===

def serialize_order_item(item: OrderItem) -> dict:
    return {
        "id": item.id,
        "productId": item.product_id,
        "productName": item.product_name,
        "quantity": item.quantity,
        "unitPrice": money(item.unit_price),
        "totalPrice": money(item.total_price),
        "variant": decode_variant(item.variant),
    }


def serialize_transaction(tx: TokenTransaction) -> dict:
    return {
        "id": tx.id,
        "type": tx.type.value,
        "amount": money(tx.amount),
        "balanceBefore": money(tx.balance_before),
        "balanceAfter": money(tx.balance_after),
        "status": tx.status.value,
        "description": tx.description,
        "reference": tx.reference,
        "metadata": tx.metadata_json,
        "createdAt": iso(tx.created_at),
    }


def serialize_order(order: Order, items: list[OrderItem]) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status.value,
        "subtotal": money(order.subtotal),
        "tax": money(order.tax),
        "deliveryFee": money(order.delivery_fee),
        "total": money(order.total),
        "deliveryMethod": order.delivery_method.value,
        "paymentMethod": order.payment_method.value,
        "deliveryAddress": {
            "street": order.delivery_street,
            "city": order.delivery_city,
            "province": order.delivery_province,
            "postalCode": order.delivery_postal_code,
            "country": order.delivery_country,
        },
        "notes": order.notes,
        "items": [serialize_order_item(item) for item in items],
        "createdAt": iso(order.created_at),
        "updatedAt": iso(order.updated_at),
    }


async def load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[OrderItem]]:
    grouped: dict[str, list[OrderItem]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return grouped
    result = await session.execute(
        select(OrderItem).where(OrderItem.order_id.in_(order_ids)).order_by(OrderItem.id)
    )
    for item in result.scalars().all():
        grouped[item.order_id].append(item)
    return grouped


async def get_owned_order(session: AsyncSession, subscriber_id: str, order_id: str) -> Order:
    result = await session.execute(
        select(Order).where(Order.id == order_id, Order.subscriber_id == subscriber_id)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order not found")
    return order


def day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


# === Routes ===

@router.get("")
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    min_total: Optional[Decimal] = Query(None, alias="minTotal", ge=0),
    max_total: Optional[Decimal] = Query(None, alias="maxTotal", ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: Literal["createdAt", "total", "status"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    filters = [Order.subscriber_id == ctx.subscriber_id]
    if status_filter:
        filters.append(Order.status == status_filter)
    if start_date:
        filters.append(Order.created_at >= day_start(start_date))
    if end_date:
        filters.append(Order.created_at < day_start(end_date) + timedelta(days=1))
    if min_total is not None:
        filters.append(Order.total >= min_total)
    if max_total is not None:
        filters.append(Order.total <= max_total)

    total = await session.scalar(select(func.count(Order.id)).where(*filters))

    column = SORT_COLUMNS[sort_by]
    order_by = column.asc() if sort_order == "asc" else column.desc()
    result = await session.execute(
        select(Order).where(*filters).order_by(order_by, Order.id).offset((page - 1) * limit).limit(limit)
    )
    orders = result.scalars().all()
    items = await load_items(session, [o.id for o in orders])

    return {
        "orders": [serialize_order(o, items[o.id]) for o in orders],
        "pagination": pagination_meta(page, limit, total or 0),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    request: Request,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    subscriber = ctx.subscriber
    cart = await get_or_create_cart(session, subscriber.id)
    lines = await load_cart_lines(session, cart.id, lock=True)
    if not lines:
        raise ValidationError("Your cart is empty", code=ErrorCodes.EMPTY_CART)

    ensure_cart_stock(lines)

    totals = compute_order_totals(lines, payload.delivery_method)
    if payload.payment_method == PaymentMethod.TOKENS and subscriber.token_balance < totals.total:
        raise InsufficientBalanceError(
            "Insufficient token balance",
            details={"balance": money(subscriber.token_balance), "required": float(totals.total)},
        )
    address = payload.delivery_address

    order = Order(
        order_number=generate_order_number(),
        subscriber_id=subscriber.id,
        status=OrderStatus.PENDING,
        subtotal=totals.subtotal,
        tax=totals.tax,
        delivery_fee=totals.delivery_fee,
        total=totals.total,
        delivery_method=payload.delivery_method,
        payment_method=payload.payment_method,
        delivery_street=address.street,
        delivery_city=address.city,
        delivery_province=address.province,
        delivery_postal_code=address.postal_code,
        delivery_country=address.country,
        notes=sanitize_text(payload.notes),
    )
    session.add(order)
    await session.flush()

    items = []
    for line in lines:
        item = OrderItem(
            order_id=order.id,
            product_id=line.product.id,
            product_name=line.product.name,
            quantity=line.item.quantity,
            unit_price=line.product.price,
            total_price=line.line_total,
            variant=line.item.variant,
        )
        items.append(item)
        session.add(item)
        adjust_stock(line.product, -line.item.quantity)

    if payload.payment_method == PaymentMethod.TOKENS:
        await apply_token_transaction(
            session,
            subscriber,
            type=TokenTransactionType.PURCHASE,
            amount=totals.total,
            description=f"Payment for order {order.order_number}",
            order_id=order.id,
            reference=order.order_number,
            metadata={"itemCount": sum(i.quantity for i in items)},
        )

    record_status_change(session, order, OrderStatus.PENDING, changed_by=subscriber.id, note="Order placed")
    await clear_cart(session, cart.id)

    await log_compliance_event(
        session,
        event_type=ComplianceEventType.ORDER_PLACED,
        subscriber_id=subscriber.id,
        event_data={"orderNumber": order.order_number, "total": float(totals.total)},
        request=request,
    )
    if payload.payment_method == PaymentMethod.TOKENS:
        await log_compliance_event(
            session,
            event_type=ComplianceEventType.PAYMENT_PROCESSED,
            subscriber_id=subscriber.id,
            event_data={"orderNumber": order.order_number, "amount": float(totals.total), "method": "TOKENS"},
            request=request,
        )
    await session.commit()
    logger.info(f"Order {order.order_number} placed by {subscriber.id} for {totals.total}")

    return {
        "success": True,
        "message": "Order placed successfully",
        "order": serialize_order(order, items),
        "newBalance": money(subscriber.token_balance),
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    order = await get_owned_order(session, ctx.subscriber_id, order_id)
    items = await load_items(session, [order.id])

    history = await session.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order.id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    )
    transactions = await session.execute(
        select(TokenTransaction)
        .where(TokenTransaction.order_id == order.id)
        .order_by(TokenTransaction.created_at)
    )

    data = serialize_order(order, items[order.id])
    data["statusHistory"] = [
        {
            "fromStatus": h.from_status.value if h.from_status else None,
            "toStatus": h.to_status.value,
            "note": h.note,
            "createdAt": iso(h.created_at),
        }
        for h in history.scalars().all()
    ]
    data["tokenTransactions"] = [serialize_transaction(tx) for tx in transactions.scalars().all()]
    return {"order": data}


@router.delete("/{order_id}")
async def cancel_order(
    order_id: str,
    request: Request,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    order = await get_owned_order(session, ctx.subscriber_id, order_id)
    if order.status != OrderStatus.PENDING:
        raise ValidationError(
            "Only pending orders can be cancelled", code=ErrorCodes.INVALID_STATUS_TRANSITION
        )

    await reverse_order(
        session, order, OrderStatus.CANCELLED, changed_by=ctx.subscriber_id, note="Cancelled by customer"
    )
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=ctx.subscriber_id,
        event_data={"action": "order_cancelled", "orderNumber": order.order_number},
        request=request,
    )
    await session.commit()

    return {
        "success": True,
        "message": "Order cancelled",
        "order": {"id": order.id, "orderNumber": order.order_number, "status": order.status.value},
    }
