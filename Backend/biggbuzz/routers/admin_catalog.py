"""
Admin order fulfilment and catalog maintenance.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..commerce import REVERSING_STATUSES, ensure_transition, record_status_change, reverse_order
from ..compliance import log_compliance_event
from ..core.db import get_session
from ..core.errors import NotFoundError
from ..core.request_context import AdminContext, get_current_admin
from ..core.responses import CamelModel, iso, pagination_meta
from ..models import (
    ComplianceEventType,
    Order,
    OrderStatus,
    Product,
    ProductCategory,
    StrainType,
    Vendor,
)
from ..validation import sanitize_text
from .orders import load_items, serialize_order
from .products import serialize_product

router = APIRouter(prefix="/api/admin", tags=["admin-catalog"])
logger = logging.getLogger(__name__)


# === Request Models ===

class OrderStatusUpdate(CamelModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class ProductCreate(CamelModel):
    vendor_id: str
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    category: ProductCategory
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    stock_quantity: int = Field(0, ge=0)
    strain_type: Optional[StrainType] = None
    thc_content: Optional[Decimal] = Field(None, ge=0, le=100)
    cbd_content: Optional[Decimal] = Field(None, ge=0, le=100)
    image_url: Optional[str] = Field(None, max_length=500)
    is_active: bool = True


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[ProductCategory] = None
    price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    stock_quantity: Optional[int] = Field(None, ge=0)
    strain_type: Optional[StrainType] = None
    thc_content: Optional[Decimal] = Field(None, ge=0, le=100)
    cbd_content: Optional[Decimal] = Field(None, ge=0, le=100)
    image_url: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


# === Orders ===

@router.get("/orders")
async def list_all_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    filters = []
    if status_filter:
        filters.append(Order.status == status_filter)

    total = await session.scalar(select(func.count(Order.id)).where(*filters))
    result = await session.execute(
        select(Order)
        .where(*filters)
        .order_by(Order.created_at.desc(), Order.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    orders = result.scalars().all()
    items = await load_items(session, [o.id for o in orders])

    return {
        "orders": [
            {**serialize_order(o, items[o.id]), "subscriberId": o.subscriber_id} for o in orders
        ],
        "pagination": pagination_meta(page, limit, total or 0),
    }


@router.put("/orders/{order_id}")
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    order = await session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")

    previous = order.status
    ensure_transition(previous, payload.status)
    changed_by = f"admin:{admin.username}"
    note = sanitize_text(payload.note)

    if payload.status in REVERSING_STATUSES:
        await reverse_order(session, order, payload.status, changed_by=changed_by, note=note)
    else:
        record_status_change(session, order, payload.status, changed_by=changed_by, note=note)

    if payload.status == OrderStatus.DELIVERED:
        await log_compliance_event(
            session,
            event_type=ComplianceEventType.PRODUCT_DELIVERED,
            subscriber_id=order.subscriber_id,
            event_data={"orderNumber": order.order_number},
            request=request,
        )
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=order.subscriber_id,
        event_data={
            "action": "order_status_changed",
            "orderNumber": order.order_number,
            "from": previous.value,
            "to": payload.status.value,
            "admin": admin.username,
        },
        request=request,
    )
    await session.commit()
    logger.info(
        f"Admin {admin.username} moved order {order.order_number} {previous.value} -> {payload.status.value}"
    )

    return {
        "success": True,
        "order": {
            "id": order.id,
            "orderNumber": order.order_number,
            "status": order.status.value,
            "updatedAt": iso(order.updated_at),
        },
    }


# === Catalog ===

@router.get("/vendors")
async def list_vendors(
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(select(Vendor).order_by(Vendor.name))
    return {
        "vendors": [
            {"id": v.id, "name": v.name, "email": v.email, "isActive": v.is_active}
            for v in result.scalars().all()
        ]
    }


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    vendor = await session.get(Vendor, payload.vendor_id)
    if not vendor:
        raise NotFoundError("Vendor not found")

    data = payload.model_dump()
    data["name"] = sanitize_text(data["name"])
    data["description"] = sanitize_text(data["description"])
    product = Product(**data, in_stock=payload.stock_quantity > 0)
    session.add(product)
    await session.commit()
    logger.info(f"Admin {admin.username} created product {product.id} ({product.name})")

    return {"success": True, "product": serialize_product(product, vendor)}


@router.patch("/products/{product_id}")
async def update_product(
    product_id: str,
    payload: ProductUpdate,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    product = await session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for field in ("name", "description"):
        if field in changes:
            changes[field] = sanitize_text(changes[field])
    for field, value in changes.items():
        setattr(product, field, value)
    if "stock_quantity" in changes:
        product.in_stock = product.stock_quantity > 0

    await session.commit()
    logger.info(f"Admin {admin.username} updated product {product.id}: {sorted(changes)}")

    return {"success": True, "product": serialize_product(product)}
