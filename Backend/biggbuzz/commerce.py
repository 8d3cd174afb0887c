"""
Cart and order bookkeeping shared by the storefront and admin routes.

PRICING:
    subtotal = sum(unit price x quantity)
    tax      = subtotal x TAX_RATE
    delivery = EXPRESS 50, STANDARD 25, PICKUP / DRONE free
    total    = subtotal + tax + delivery

ORDER LIFECYCLE:
    PENDING -> CONFIRMED -> PROCESSING -> PACKED -> SHIPPED
            -> OUT_FOR_DELIVERY -> DELIVERED -> REFUNDED
    PENDING, CONFIRMED and PROCESSING may also be CANCELLED.
    CANCELLED and REFUNDED are terminal; both put stock back and, for
    token-paid orders, refund the total.
"""

import json
import logging
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import ValidationError
from .core.responses import ErrorCodes, quantize_money
from .ledger import apply_token_transaction
from .models import (
    Cart,
    CartItem,
    DeliveryMethod,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    Product,
    Subscriber,
    TokenTransactionType,
)

logger = logging.getLogger(__name__)

DELIVERY_FEES = {
    DeliveryMethod.EXPRESS: Decimal("50.00"),
    DeliveryMethod.STANDARD: Decimal("25.00"),
    DeliveryMethod.PICKUP: Decimal("0.00"),
    DeliveryMethod.DRONE: Decimal("0.00"),
}

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.PACKED, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.PACKED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

REVERSING_STATUSES = {OrderStatus.CANCELLED, OrderStatus.REFUNDED}

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class CartLine:
    item: CartItem
    product: Product

    @property
    def line_total(self) -> Decimal:
        return quantize_money(self.product.price * self.item.quantity)


@dataclass
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    delivery_fee: Decimal
    total: Decimal


# ────────────────────────────────────────────────────────────────
# Pricing
# ────────────────────────────────────────────────────────────────

def compute_tax(subtotal: Decimal) -> Decimal:
    return quantize_money(subtotal * get_settings().tax_rate)


def compute_order_totals(lines: list[CartLine], delivery_method: DeliveryMethod) -> OrderTotals:
    subtotal = quantize_money(sum((line.line_total for line in lines), Decimal("0")))
    tax = compute_tax(subtotal)
    fee = DELIVERY_FEES[delivery_method]
    return OrderTotals(subtotal=subtotal, tax=tax, delivery_fee=fee, total=subtotal + tax + fee)


def cart_summary(lines: list[CartLine]) -> dict:
    subtotal = quantize_money(sum((line.line_total for line in lines), Decimal("0")))
    tax = compute_tax(subtotal)
    return {
        "itemCount": sum(line.item.quantity for line in lines),
        "subtotal": float(subtotal),
        "tax": float(tax),
        "total": float(subtotal + tax),
    }


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


# ────────────────────────────────────────────────────────────────
# Cart
# ────────────────────────────────────────────────────────────────

async def get_or_create_cart(session: AsyncSession, subscriber_id: str) -> Cart:
    result = await session.execute(select(Cart).where(Cart.subscriber_id == subscriber_id))
    cart = result.scalar_one_or_none()
    if cart is None:
        cart = Cart(subscriber_id=subscriber_id)
        session.add(cart)
        await session.flush()
    return cart


async def load_cart_lines(session: AsyncSession, cart_id: str, lock: bool = False) -> list[CartLine]:
    """
    Cart lines joined to their products, oldest first.

    With lock=True the product rows are selected FOR UPDATE and refreshed
    from the database, so the stock read here holds until commit.
    """
    stmt = (
        select(CartItem, Product)
        .join(Product, Product.id == CartItem.product_id)
        .where(CartItem.cart_id == cart_id)
        .order_by(CartItem.created_at, CartItem.id)
    )
    if lock:
        stmt = stmt.with_for_update(of=Product).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return [CartLine(item=item, product=product) for item, product in result.all()]


async def cart_quantity_for(
    session: AsyncSession,
    cart_id: str,
    product_id: str,
    exclude_item_id: Optional[str] = None,
) -> int:
    """Units of a product already in the cart, across all of its variants."""
    stmt = select(func.coalesce(func.sum(CartItem.quantity), 0)).where(
        CartItem.cart_id == cart_id, CartItem.product_id == product_id
    )
    if exclude_item_id is not None:
        stmt = stmt.where(CartItem.id != exclude_item_id)
    return int(await session.scalar(stmt) or 0)


async def clear_cart(session: AsyncSession, cart_id: str) -> None:
    await session.execute(delete(CartItem).where(CartItem.cart_id == cart_id))


def ensure_stock(product: Product, quantity: int) -> None:
    if not product.is_active or not product.in_stock:
        raise ValidationError(
            f"{product.name} is no longer available", code=ErrorCodes.PRODUCT_UNAVAILABLE
        )
    if quantity > product.stock_quantity:
        raise ValidationError(
            "Not enough stock available",
            code=ErrorCodes.INSUFFICIENT_STOCK,
            details={"productId": product.id, "available": product.stock_quantity},
        )


def quantities_by_product(lines: list[CartLine]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for line in lines:
        totals[line.product.id] = totals.get(line.product.id, 0) + line.item.quantity
    return totals


def ensure_cart_stock(lines: list[CartLine]) -> None:
    """Check stock per product, summing lines that differ only by variant."""
    products = {line.product.id: line.product for line in lines}
    for product_id, quantity in quantities_by_product(lines).items():
        ensure_stock(products[product_id], quantity)


# ────────────────────────────────────────────────────────────────
# Stock and order state
# ────────────────────────────────────────────────────────────────

def adjust_stock(product: Product, delta: int) -> None:
    remaining = product.stock_quantity + delta
    if remaining < 0:
        raise ValidationError(
            "Not enough stock available",
            code=ErrorCodes.INSUFFICIENT_STOCK,
            details={"productId": product.id, "available": product.stock_quantity},
        )
    product.stock_quantity = remaining
    product.in_stock = remaining > 0


async def restore_order_stock(session: AsyncSession, order: Order) -> None:
    result = await session.execute(
        select(OrderItem, Product)
        .join(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id == order.id)
    )
    for item, product in result.all():
        adjust_stock(product, item.quantity)


def record_status_change(
    session: AsyncSession,
    order: Order,
    to_status: OrderStatus,
    *,
    changed_by: str,
    note: Optional[str] = None,
) -> OrderStatusHistory:
    entry = OrderStatusHistory(
        order_id=order.id,
        from_status=order.status if order.status != to_status else None,
        to_status=to_status,
        changed_by=changed_by,
        note=note,
    )
    session.add(entry)
    order.status = to_status
    return entry


async def reverse_order(
    session: AsyncSession,
    order: Order,
    to_status: OrderStatus,
    *,
    changed_by: str,
    note: Optional[str] = None,
) -> None:
    """Cancel or refund an order: put stock back and return paid tokens."""
    await restore_order_stock(session, order)

    if order.payment_method == PaymentMethod.TOKENS:
        subscriber = await session.get(Subscriber, order.subscriber_id)
        await apply_token_transaction(
            session,
            subscriber,
            type=TokenTransactionType.REFUND,
            amount=order.total,
            description=f"Refund for order {order.order_number}",
            order_id=order.id,
            reference=order.order_number,
            metadata={"reason": to_status.value.lower(), "changedBy": changed_by},
        )

    record_status_change(session, order, to_status, changed_by=changed_by, note=note)
    await session.flush()
    logger.info(f"Order {order.order_number} reversed to {to_status.value} by {changed_by}")


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(
            f"Cannot change order status from {current.value} to {target.value}",
            code=ErrorCodes.INVALID_STATUS_TRANSITION,
        )


def decode_variant(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw
