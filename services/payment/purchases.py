"""
services/payment/purchases.py
Credit purchase bookkeeping.

A Transaction is written as pending before the gateway is contacted.
It reaches completed or failed through a conditional UPDATE on
status = pending, and credits are added only by the caller whose
UPDATE hit the row. Duplicate callbacks, verify retries and the
reconciliation job can therefore race freely without double-crediting.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.credits.ledger import add_credits
from services.notification.dispatch import notify
from services.payment.telr import TelrClient
from shared.exceptions import PackageNotFoundError, TransactionNotFoundError
from shared.models.models import (
    CreditPackage,
    NotificationType,
    PaymentMethod,
    Transaction,
    TransactionStatus,
    User,
    utcnow,
)
from shared.utils.metrics import TRANSACTIONS_FINALIZED

logger = logging.getLogger(__name__)

# Public package list cached by the payments router
PACKAGES_CACHE_KEY = "credit_packages:active"


@dataclass
class FinalizeResult:
    transaction: Transaction
    changed: bool = False
    notification_ids: list[uuid.UUID] = field(default_factory=list)
    needs_review: bool = False


def new_cart_id() -> str:
    return f"SM-{uuid.uuid4().hex[:24].upper()}"


async def get_active_package(db: AsyncSession, package_id: uuid.UUID) -> CreditPackage:
    package = await db.get(CreditPackage, package_id)
    if not package or not package.is_active:
        raise PackageNotFoundError(package_id)
    return package


async def get_transaction_by_cart(db: AsyncSession, cart_id: str) -> Transaction:
    tx = await db.scalar(select(Transaction).where(Transaction.cart_id == cart_id))
    if not tx:
        raise TransactionNotFoundError(cart_id)
    return tx


async def start_purchase(
    db: AsyncSession,
    user: User,
    package: CreditPackage,
    method: PaymentMethod = PaymentMethod.TELR,
) -> Transaction:
    tx = Transaction(
        user_id=user.id,
        package_id=package.id,
        category=package.category,
        credits=package.credits,
        amount=package.price,
        currency=package.currency,
        method=method,
        status=TransactionStatus.PENDING,
        cart_id=new_cart_id(),
    )
    db.add(tx)
    await db.flush()
    logger.info(f"Transaction {tx.cart_id} started: {package.credits} {package.category.value} credits")
    return tx


async def complete_transaction(
    db: AsyncSession,
    tx: Transaction,
    gateway_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    now = now or utcnow()
    values = {"status": TransactionStatus.COMPLETED, "completed_at": now}
    if gateway_ref:
        values["gateway_ref"] = gateway_ref

    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status == TransactionStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(tx)
    if result.rowcount != 1:
        return FinalizeResult(tx, changed=False)

    await add_credits(db, tx.user_id, tx.category, tx.credits)
    notification = await notify(
        db, tx.user_id, NotificationType.CREDITS_ADDED,
        credits=tx.credits, category=tx.category.value,
        data={"cart_id": tx.cart_id},
    )
    TRANSACTIONS_FINALIZED.labels("completed", tx.method.value).inc()
    logger.info(f"Transaction {tx.cart_id} completed, {tx.credits} credits added to {tx.user_id}")
    return FinalizeResult(tx, changed=True, notification_ids=[notification.id])


async def fail_transaction(
    db: AsyncSession,
    tx: Transaction,
    reason: str,
    notify_user: bool = True,
) -> FinalizeResult:
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status == TransactionStatus.PENDING)
        .values(status=TransactionStatus.FAILED, failure_reason=reason)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(tx)
    if result.rowcount != 1:
        return FinalizeResult(tx, changed=False)

    notification_ids = []
    if notify_user:
        notification = await notify(
            db, tx.user_id, NotificationType.PAYMENT_FAILED,
            credits=tx.credits, category=tx.category.value,
            data={"cart_id": tx.cart_id, "reason": reason},
        )
        notification_ids.append(notification.id)
    TRANSACTIONS_FINALIZED.labels("failed", tx.method.value).inc()
    logger.info(f"Transaction {tx.cart_id} failed: {reason}")
    return FinalizeResult(tx, changed=True, notification_ids=notification_ids)


async def reconcile_transaction(
    db: AsyncSession,
    tx: Transaction,
    telr: TelrClient,
    now: Optional[datetime] = None,
    expire_stale: bool = False,
) -> FinalizeResult:
    """
    Ask the gateway for the authoritative status of a pending Telr order
    and finalize accordingly. With expire_stale, orders still unresolved
    after PENDING_TRANSACTION_FAIL_HOURS are failed.

    An Apple Pay charge that timed out has no gateway reference to check,
    so it is never failed automatically: once stale it is flagged for an
    admin to resolve by hand.
    """
    now = now or utcnow()
    if tx.status != TransactionStatus.PENDING:
        return FinalizeResult(tx, changed=False)

    stale = tx.created_at <= now - timedelta(hours=settings.PENDING_TRANSACTION_FAIL_HOURS)

    if tx.method == PaymentMethod.APPLE_PAY and not tx.gateway_ref:
        if expire_stale and stale:
            logger.error(
                f"Apple Pay transaction {tx.cart_id} unresolved after "
                f"{settings.PENDING_TRANSACTION_FAIL_HOURS}h, needs manual review"
            )
            return FinalizeResult(tx, changed=False, needs_review=True)
        return FinalizeResult(tx, changed=False)

    if tx.method == PaymentMethod.TELR and tx.gateway_ref:
        status = await telr.check_order(tx.gateway_ref)
        if status.is_paid:
            return await complete_transaction(db, tx, status.transaction_ref, now=now)
        if status.is_failed:
            return await fail_transaction(db, tx, status.text or "Payment was not completed")

    if expire_stale and stale:
        return await fail_transaction(db, tx, "Payment was not completed in time", notify_user=False)
    return FinalizeResult(tx, changed=False)
