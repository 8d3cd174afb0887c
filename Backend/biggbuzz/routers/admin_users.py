"""
Admin user management: listing, detail, activation, soft delete, bulk
actions, and manual token adjustments.

Every change writes a DATA_MODIFICATION compliance event naming the admin.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field, field_validator
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..accounts import serialize_subscriber
from ..compliance import log_compliance_event
from ..core.db import get_session
from ..core.errors import NotFoundError, ValidationError
from ..core.request_context import AdminContext, get_current_admin
from ..core.responses import CamelModel, ErrorCodes, admin_pagination_meta, iso, money
from ..ledger import apply_token_transaction
from ..models import (
    ComplianceEventType,
    Order,
    Subscriber,
    TokenTransaction,
    TokenTransactionType,
    utcnow,
)
from ..validation import sanitize_text

router = APIRouter(prefix="/api/admin/users", tags=["admin-users"])
logger = logging.getLogger(__name__)

UserAction = Literal["toggle-active", "delete", "update-role"]

SORT_COLUMNS = {
    "createdAt": Subscriber.created_at,
    "firstName": Subscriber.first_name,
    "lastName": Subscriber.last_name,
    "phoneNumber": Subscriber.phone_number,
}

ADMIN_TOKEN_TYPES = {
    TokenTransactionType.DEPOSIT,
    TokenTransactionType.BONUS,
    TokenTransactionType.PENALTY,
    TokenTransactionType.ADJUSTMENT,
    TokenTransactionType.WITHDRAWAL,
}


# === Request Models ===

class UserActionRequest(CamelModel):
    action: UserAction


class BulkUserActionRequest(CamelModel):
    user_ids: list[str] = Field(..., min_length=1, max_length=100)
    action: UserAction


class TokenAdjustmentRequest(CamelModel):
    amount: float
    type: TokenTransactionType = TokenTransactionType.ADJUSTMENT
    description: str = Field(..., min_length=3, max_length=255)

    @field_validator("amount")
    @classmethod
    def non_zero(cls, v: float) -> float:
        if v == 0:
            raise ValueError("Amount must be non-zero")
        return v

    @field_validator("type")
    @classmethod
    def admin_type(cls, v: TokenTransactionType) -> TokenTransactionType:
        if v not in ADMIN_TOKEN_TYPES:
            raise ValueError("Purchases and refunds are recorded by orders only")
        return v


# === Helpers ===

async def get_live_subscriber(session: AsyncSession, user_id: str) -> Subscriber:
    result = await session.execute(
        select(Subscriber).where(Subscriber.id == user_id, Subscriber.deleted_at.is_(None))
    )
    subscriber = result.scalar_one_or_none()
    if not subscriber:
        raise NotFoundError("User not found")
    return subscriber


async def apply_user_action(
    session: AsyncSession,
    subscriber: Subscriber,
    action: str,
    admin: AdminContext,
    request: Request,
) -> dict:
    """Apply one admin action and record it. Returns the change made."""
    if action == "update-role":
        raise ValidationError(
            "Subscribers do not have roles", code=ErrorCodes.INVALID_ACTION
        )

    if action == "toggle-active":
        subscriber.is_active = not subscriber.is_active
        change = {"action": action, "isActive": subscriber.is_active}
        if not subscriber.is_active:
            await log_compliance_event(
                session,
                event_type=ComplianceEventType.ACCOUNT_SUSPENDED,
                subscriber_id=subscriber.id,
                event_data={"suspendedBy": admin.username},
                request=request,
            )
    elif action == "delete":
        subscriber.deleted_at = utcnow()
        subscriber.is_active = False
        change = {"action": action, "deletedAt": iso(subscriber.deleted_at)}
    else:
        raise ValidationError(f"Unknown action: {action}", code=ErrorCodes.INVALID_ACTION)

    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=subscriber.id,
        event_data={**change, "admin": admin.username},
        request=request,
    )
    return change


# === Routes ===

@router.get("")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    verified: Optional[bool] = None,
    active_status: Optional[Literal["active", "inactive"]] = Query(None, alias="activeStatus"),
    sort_by: Literal["createdAt", "firstName", "lastName", "phoneNumber"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    filters = [Subscriber.deleted_at.is_(None)]
    if search:
        pattern = f"%{sanitize_text(search)}%"
        filters.append(
            or_(
                Subscriber.first_name.ilike(pattern),
                Subscriber.last_name.ilike(pattern),
                Subscriber.phone_number.ilike(pattern),
                Subscriber.email.ilike(pattern),
            )
        )
    if verified is not None:
        filters.append(Subscriber.phone_verified.is_(verified))
    if active_status:
        filters.append(Subscriber.is_active.is_(active_status == "active"))

    total = await session.scalar(select(func.count(Subscriber.id)).where(*filters))

    column = SORT_COLUMNS[sort_by]
    order_by = column.asc() if sort_order == "asc" else column.desc()
    result = await session.execute(
        select(Subscriber).where(*filters).order_by(order_by, Subscriber.id).offset((page - 1) * limit).limit(limit)
    )

    return {
        "users": [serialize_subscriber(s) for s in result.scalars().all()],
        "pagination": admin_pagination_meta(page, limit, total or 0),
    }


@router.patch("/bulk")
async def bulk_user_action(
    payload: BulkUserActionRequest,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    if payload.action == "update-role":
        raise ValidationError("Subscribers do not have roles", code=ErrorCodes.INVALID_ACTION)

    result = await session.execute(
        select(Subscriber).where(
            Subscriber.id.in_(payload.user_ids), Subscriber.deleted_at.is_(None)
        )
    )
    subscribers = result.scalars().all()
    found = {s.id for s in subscribers}

    for subscriber in subscribers:
        await apply_user_action(session, subscriber, payload.action, admin, request)
    await session.commit()

    not_found = [user_id for user_id in payload.user_ids if user_id not in found]
    logger.info(
        f"Admin {admin.username} applied {payload.action} to {len(subscribers)} users "
        f"({len(not_found)} not found)"
    )
    return {"success": True, "updated": len(subscribers), "notFound": not_found}


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    subscriber = await get_live_subscriber(session, user_id)
    order_count = await session.scalar(
        select(func.count(Order.id)).where(Order.subscriber_id == subscriber.id)
    )
    tx_result = await session.execute(
        select(TokenTransaction)
        .where(TokenTransaction.subscriber_id == subscriber.id)
        .order_by(TokenTransaction.created_at.desc())
        .limit(10)
    )

    return {
        "user": {
            **serialize_subscriber(subscriber),
            "orderCount": order_count or 0,
            "recentTransactions": [
                {
                    "id": tx.id,
                    "type": tx.type.value,
                    "amount": money(tx.amount),
                    "balanceAfter": money(tx.balance_after),
                    "description": tx.description,
                    "createdAt": iso(tx.created_at),
                }
                for tx in tx_result.scalars().all()
            ],
        }
    }


@router.patch("/{user_id}")
async def update_user(
    user_id: str,
    payload: UserActionRequest,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    subscriber = await get_live_subscriber(session, user_id)
    change = await apply_user_action(session, subscriber, payload.action, admin, request)
    await session.commit()
    logger.info(f"Admin {admin.username} applied {payload.action} to user {subscriber.id}")

    return {"success": True, "user": serialize_subscriber(subscriber), "change": change}


@router.post("/{user_id}/tokens")
async def adjust_tokens(
    user_id: str,
    payload: TokenAdjustmentRequest,
    request: Request,
    admin: AdminContext = Depends(get_current_admin),
    session: AsyncSession = Depends(get_session),
):
    subscriber = await get_live_subscriber(session, user_id)
    transaction = await apply_token_transaction(
        session,
        subscriber,
        type=payload.type,
        amount=payload.amount,
        description=sanitize_text(payload.description),
        reference=f"admin:{admin.username}",
        metadata={"admin": admin.username},
    )
    await log_compliance_event(
        session,
        event_type=ComplianceEventType.DATA_MODIFICATION,
        subscriber_id=subscriber.id,
        event_data={
            "action": "token_adjustment",
            "type": payload.type.value,
            "amount": money(transaction.amount),
            "admin": admin.username,
        },
        request=request,
    )
    await session.commit()

    return {
        "success": True,
        "transaction": {
            "id": transaction.id,
            "type": transaction.type.value,
            "amount": money(transaction.amount),
            "balanceBefore": money(transaction.balance_before),
            "balanceAfter": money(transaction.balance_after),
        },
        "newBalance": money(subscriber.token_balance),
    }
