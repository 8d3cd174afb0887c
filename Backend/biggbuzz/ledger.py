"""
Token balance ledger.

Every change to a subscriber's token balance goes through
apply_token_transaction(), which writes one TokenTransaction row with the
balance before and after. The balance can never go below zero.

The caller owns the database transaction: this module only flushes, so a
checkout can debit tokens, decrement stock and create the order atomically.

Usage:
    await apply_token_transaction(
        session,
        subscriber,
        type=TokenTransactionType.PURCHASE,
        amount=-order.total,
        description=f"Order {order.order_number}",
        order_id=order.id,
    )
    await session.commit()
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import InsufficientBalanceError, ValidationError
from .core.responses import quantize_money
from .models import (
    Subscriber,
    TokenTransaction,
    TokenTransactionType,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# Types whose amount must be positive / negative
CREDIT_TYPES = {TokenTransactionType.DEPOSIT, TokenTransactionType.BONUS, TokenTransactionType.REFUND}
DEBIT_TYPES = {TokenTransactionType.PURCHASE, TokenTransactionType.WITHDRAWAL, TokenTransactionType.PENALTY}


def signed_amount(type: TokenTransactionType, amount) -> Decimal:
    """
    Normalize the sign of an amount for a transaction type.

    Credits are positive, debits negative; ADJUSTMENT keeps the sign given.
    """
    value = quantize_money(amount)
    if value == 0:
        raise ValidationError("Transaction amount must be non-zero")
    if type in CREDIT_TYPES:
        return abs(value)
    if type in DEBIT_TYPES:
        return -abs(value)
    return value


async def apply_token_transaction(
    session: AsyncSession,
    subscriber: Subscriber,
    *,
    type: TokenTransactionType,
    amount,
    description: str,
    order_id: Optional[str] = None,
    reference: Optional[str] = None,
    metadata: Optional[dict] = None,
    status: TransactionStatus = TransactionStatus.COMPLETED,
) -> TokenTransaction:
    """
    Record a balance change and update the subscriber's balance.

    PENDING transactions are recorded without moving the balance.

    Raises:
        InsufficientBalanceError: the change would make the balance negative
    """
    # Re-read the row under lock so concurrent checkouts serialize
    result = await session.execute(
        select(Subscriber)
        .where(Subscriber.id == subscriber.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    locked = result.scalar_one()

    delta = signed_amount(type, amount)
    balance_before = quantize_money(locked.token_balance or 0)
    moves_balance = status == TransactionStatus.COMPLETED
    balance_after = balance_before + delta if moves_balance else balance_before

    if balance_after < 0:
        logger.warning(
            f"Insufficient balance for subscriber {locked.id}: "
            f"balance {balance_before}, requested {delta}"
        )
        raise InsufficientBalanceError(
            "Insufficient token balance",
            details={"balance": float(balance_before), "required": float(-delta)},
        )

    transaction = TokenTransaction(
        subscriber_id=locked.id,
        order_id=order_id,
        type=type,
        amount=delta,
        balance_before=balance_before,
        balance_after=balance_after,
        status=status,
        description=description,
        reference=reference,
        metadata_json=metadata,
    )
    session.add(transaction)
    locked.token_balance = balance_after
    await session.flush()

    logger.info(
        f"Token {type.value} of {delta} for subscriber {locked.id}: {balance_before} -> {balance_after}"
    )
    return transaction
