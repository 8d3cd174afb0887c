import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..commerce import (
    CartLine,
    cart_quantity_for,
    cart_summary,
    decode_variant,
    clear_cart,
    ensure_stock,
    get_or_create_cart,
    load_cart_lines,
)
from ..core.db import get_session
from ..core.errors import NotFoundError
from ..core.request_context import SubscriberContext, get_current_subscriber
from ..core.responses import CamelModel, iso, money
from ..models import Cart, CartItem, Product

router = APIRouter(prefix="/api/cart", tags=["cart"])
logger = logging.getLogger(__name__)


# === Request Models ===

class AddToCartRequest(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=50)
    variant: Optional[Any] = None

    @field_validator("variant")
    @classmethod
    def encode_variant(cls, v: Any) -> Optional[str]:
        """Variants are stored as canonical JSON text so equal variants merge."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return json.dumps(v)
        return json.dumps(v, sort_keys=True)


class UpdateCartItemRequest(CamelModel):
    quantity: int = Field(..., ge=1, le=50)


# === Helpers ===

def serialize_line(line: CartLine) -> dict:
    return {
        "id": line.item.id,
        "productId": line.product.id,
        "quantity": line.item.quantity,
        "variant": decode_variant(line.item.variant),
        "lineTotal": float(line.line_total),
        "addedAt": iso(line.item.created_at),
        "product": {
            "id": line.product.id,
            "name": line.product.name,
            "price": money(line.product.price),
            "category": line.product.category.value,
            "imageUrl": line.product.image_url,
            "inStock": line.product.in_stock,
            "stockQuantity": line.product.stock_quantity,
        },
    }


async def render_cart(session: AsyncSession, cart: Cart) -> dict:
    lines = await load_cart_lines(session, cart.id)
    return {
        "cart": {
            "id": cart.id,
            "items": [serialize_line(line) for line in lines],
        },
        "summary": cart_summary(lines),
    }


async def get_owned_item(session: AsyncSession, cart: Cart, item_id: str) -> CartItem:
    result = await session.execute(
        select(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart.id)
    )
    item = result.scalar_one_or_none()
    if not item:
        raise NotFoundError("Cart item not found")
    return item


# === Routes ===

@router.get("")
async def get_cart(
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    cart = await get_or_create_cart(session, ctx.subscriber_id)
    await session.commit()
    return await render_cart(session, cart)


@router.post("")
async def add_to_cart(
    payload: AddToCartRequest,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    product = await session.get(Product, payload.product_id)
    if not product or not product.is_active:
        raise NotFoundError("Product not found")

    cart = await get_or_create_cart(session, ctx.subscriber_id)
    variant_filter = (
        CartItem.variant.is_(None) if payload.variant is None else CartItem.variant == payload.variant
    )
    result = await session.execute(
        select(CartItem).where(
            CartItem.cart_id == cart.id,
            CartItem.product_id == product.id,
            variant_filter,
        )
    )
    existing = result.scalar_one_or_none()

    in_cart = await cart_quantity_for(session, cart.id, product.id)
    ensure_stock(product, in_cart + payload.quantity)
    new_quantity = payload.quantity + (existing.quantity if existing else 0)

    if existing:
        existing.quantity = new_quantity
    else:
        session.add(
            CartItem(
                cart_id=cart.id,
                product_id=product.id,
                quantity=payload.quantity,
                variant=payload.variant,
            )
        )
    await session.commit()
    logger.info(f"Subscriber {ctx.subscriber_id} added {payload.quantity} x {product.id} to cart")

    return {"success": True, "message": "Item added to cart", **await render_cart(session, cart)}


@router.delete("")
async def empty_cart(
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    cart = await get_or_create_cart(session, ctx.subscriber_id)
    await clear_cart(session, cart.id)
    await session.commit()
    return {"success": True, "message": "Cart cleared"}


@router.put("/items/{item_id}")
async def update_cart_item(
    item_id: str,
    payload: UpdateCartItemRequest,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    cart = await get_or_create_cart(session, ctx.subscriber_id)
    item = await get_owned_item(session, cart, item_id)
    product = await session.get(Product, item.product_id)
    in_cart = await cart_quantity_for(session, cart.id, product.id, exclude_item_id=item.id)
    ensure_stock(product, in_cart + payload.quantity)

    item.quantity = payload.quantity
    await session.commit()
    return {"success": True, "message": "Cart updated", **await render_cart(session, cart)}


@router.delete("/items/{item_id}")
async def remove_cart_item(
    item_id: str,
    ctx: SubscriberContext = Depends(get_current_subscriber),
    session: AsyncSession = Depends(get_session),
):
    cart = await get_or_create_cart(session, ctx.subscriber_id)
    item = await get_owned_item(session, cart, item_id)
    await session.delete(item)
    await session.commit()
    return {"success": True, "message": "Item removed", **await render_cart(session, cart)}
