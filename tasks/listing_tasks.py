"""
tasks/listing_tasks.py
Periodic listing housekeeping.

The sweep itself lives in services.listing.expiry and is shared with
tests; this module only gives it a Celery entry point and an event loop.
"""

import asyncio
import logging

from config.database import worker_session
from services.listing.expiry import SweepResult, run_expiration_sweep
from services.notification.dispatch import enqueue_push
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _sweep() -> SweepResult:
    async with worker_session() as db:
        result = await run_expiration_sweep(db)
    # Session committed above; pushes refer to persisted rows
    enqueue_push(result.notification_ids)
    return result


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def run_listing_sweep(self):
    """
    Beat task: runs every LISTING_SWEEP_INTERVAL_SECONDS.
    Idempotent: a second run over the same state deletes and notifies nothing.
    """
    try:
        result = asyncio.run(_sweep())
    except Exception as e:
        logger.exception(f"run_listing_sweep failed: {e}")
        raise self.retry(exc=e)

    return {
        "rejected_deleted": result.rejected_deleted,
        "expired_deleted": result.expired_deleted,
        "warnings_sent": result.warnings_sent,
    }
