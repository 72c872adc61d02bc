"""
tasks/payment_tasks.py
Celery tasks for payment lifecycle operations:
- Reconciliation of purchases whose callback or return never arrived
- Expiry of purchases abandoned on the payment page

All tasks are idempotent: running twice has no side effect.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import select

from config.database import worker_session
from config.settings import settings
from services.notification.dispatch import enqueue_push
from services.payment.purchases import reconcile_transaction
from services.payment.telr import TelrClient
from shared.exceptions import PaymentGatewayError
from shared.models.models import Transaction, TransactionStatus, utcnow
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def reconcile_pending(db, telr: TelrClient, now=None) -> dict:
    """
    Finalize every pending transaction older than the reconcile delay.
    A gateway error on one transaction is logged and the rest continue.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_TRANSACTION_RECONCILE_MINUTES)
    pending = (
        await db.scalars(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.created_at <= cutoff,
            )
            .order_by(Transaction.created_at)
        )
    ).all()

    summary = {"checked": len(pending), "completed": 0, "failed": 0, "errors": 0, "review": 0}
    notification_ids = []
    for tx in pending:
        try:
            result = await reconcile_transaction(db, tx, telr, now=now, expire_stale=True)
        except PaymentGatewayError as e:
            summary["errors"] += 1
            logger.warning(f"Reconciliation of {tx.cart_id} deferred: {e.detail}")
            continue
        if result.needs_review:
            summary["review"] += 1
        if result.changed:
            summary[result.transaction.status.value] += 1
            notification_ids.extend(result.notification_ids)

    summary["notification_ids"] = notification_ids
    return summary


async def _reconcile() -> dict:
    async with worker_session() as db:
        summary = await reconcile_pending(db, TelrClient())
    enqueue_push(summary.pop("notification_ids"))
    return summary


@celery_app.task(bind=True, max_retries=3, default_retry_delay=120)
def reconcile_pending_transactions(self):
    """Beat task: runs every PENDING_TRANSACTION_RECONCILE_MINUTES."""
    try:
        summary = asyncio.run(_reconcile())
    except Exception as e:
        logger.exception(f"reconcile_pending_transactions failed: {e}")
        raise self.retry(exc=e)

    logger.info(
        f"Reconciled {summary['checked']} pending transactions: "
        f"{summary['completed']} completed, {summary['failed']} failed, {summary['errors']} deferred, "
        f"{summary['review']} awaiting manual review"
    )
    return summary
