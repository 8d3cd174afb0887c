import logging
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.db import get_session
from ..core.errors import NotFoundError
from ..core.responses import iso, money, pagination_meta
from ..models import Product, ProductCategory, Vendor

router = APIRouter(prefix="/api/products", tags=["products"])
logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "name": Product.name,
    "price": Product.price,
    "createdAt": Product.created_at,
}


def serialize_product(product: Product, vendor: Optional[Vendor] = None) -> dict:
    data = {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "category": product.category.value,
        "price": money(product.price),
        "stockQuantity": product.stock_quantity,
        "inStock": product.in_stock,
        "isActive": product.is_active,
        "strainType": product.strain_type.value if product.strain_type else None,
        "thcContent": float(product.thc_content) if product.thc_content is not None else None,
        "cbdContent": float(product.cbd_content) if product.cbd_content is not None else None,
        "imageUrl": product.image_url,
        "vendorId": product.vendor_id,
        "createdAt": iso(product.created_at),
    }
    if vendor is not None:
        data["vendor"] = {"id": vendor.id, "name": vendor.name}
    return data


@router.get("")
async def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=50),
    category: Optional[ProductCategory] = None,
    search: Optional[str] = Query(None, max_length=100),
    vendor: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[Decimal] = Query(None, alias="maxPrice", ge=0),
    sort_by: Literal["name", "price", "createdAt"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    session: AsyncSession = Depends(get_session),
):
    filters = [Product.is_active.is_(True)]
    if category:
        filters.append(Product.category == category)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
    if vendor:
        filters.append(Product.vendor_id == vendor)
    if min_price is not None:
        filters.append(Product.price >= min_price)
    if max_price is not None:
        filters.append(Product.price <= max_price)

    total = await session.scalar(select(func.count(Product.id)).where(*filters))

    column = SORT_COLUMNS[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()
    result = await session.execute(
        select(Product, Vendor)
        .join(Vendor, Vendor.id == Product.vendor_id)
        .where(*filters)
        .order_by(order, Product.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return {
        "products": [serialize_product(product, vendor_row) for product, vendor_row in result.all()],
        "pagination": pagination_meta(page, limit, total or 0),
    }


@router.get("/categories")
async def list_categories(session: AsyncSession = Depends(get_session)):
    result = await session.execute(
        select(Product.category, func.count(Product.id))
        .where(Product.is_active.is_(True))
        .group_by(Product.category)
    )
    counts = {category: count for category, count in result.all()}
    return {
        "categories": [
            {"category": category.value, "productCount": counts.get(category, 0)}
            for category in ProductCategory
        ]
    }


@router.get("/{product_id}")
async def get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    result = await session.execute(
        select(Product, Vendor)
        .join(Vendor, Vendor.id == Product.vendor_id)
        .where(Product.id == product_id, Product.is_active.is_(True))
    )
    row = result.first()
    if not row:
        raise NotFoundError("Product not found")
    product, vendor = row
    return {"product": serialize_product(product, vendor)}
