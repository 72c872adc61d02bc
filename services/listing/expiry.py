"""
services/listing/expiry.py
Periodic cleanup of listings that have outlived their lifetime.

Run order matters: stale rejections go first, then expired approvals,
then "expiring soon" warnings for what survives. Re-running at the same
`now` deletes nothing new and sends no duplicate warnings.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.listing.lifecycle import purge_listings
from services.notification.dispatch import notify
from shared.models.models import Listing, ListingStatus, NotificationType, utcnow
from shared.utils.metrics import SWEEP_RUNS

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    rejected_deleted: int = 0
    expired_deleted: int = 0
    warnings_sent: int = 0
    notification_ids: list[uuid.UUID] = field(default_factory=list)


async def run_expiration_sweep(db: AsyncSession, now: Optional[datetime] = None) -> SweepResult:
    now = now or utcnow()
    result = SweepResult()

    # 1. Rejected listings past the retention period
    cutoff = now - timedelta(days=settings.REJECTED_RETENTION_DAYS)
    stale_ids = (
        await db.scalars(
            select(Listing.id).where(
                Listing.status == ListingStatus.REJECTED,
                Listing.rejected_at.is_not(None),
                Listing.rejected_at < cutoff,
            )
        )
    ).all()
    result.rejected_deleted = await purge_listings(db, stale_ids)

    # 2. Approved listings whose lifetime has run out
    expired_ids = (
        await db.scalars(
            select(Listing.id).where(
                Listing.status == ListingStatus.APPROVED,
                Listing.expires_at.is_not(None),
                Listing.expires_at <= now,
            )
        )
    ).all()
    result.expired_deleted = await purge_listings(db, expired_ids)

    # 3. One warning per listing entering the final window
    horizon = now + timedelta(hours=settings.EXPIRY_WARNING_HOURS)
    expiring = (
        await db.execute(
            select(Listing.id, Listing.owner_id, Listing.title).where(
                Listing.status == ListingStatus.APPROVED,
                Listing.expires_at > now,
                Listing.expires_at <= horizon,
                Listing.expiry_notified.is_(False),
            )
        )
    ).all()

    for listing_id, owner_id, title in expiring:
        flipped = await db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status == ListingStatus.APPROVED,
                Listing.expiry_notified.is_(False),
            )
            .values(expiry_notified=True)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            continue
        notification = await notify(
            db, owner_id, NotificationType.LISTING_EXPIRING,
            listing_id=listing_id, title=title, hours=settings.EXPIRY_WARNING_HOURS,
        )
        result.notification_ids.append(notification.id)
        result.warnings_sent += 1

    SWEEP_RUNS.labels("rejected_deleted").inc(result.rejected_deleted)
    SWEEP_RUNS.labels("expired_deleted").inc(result.expired_deleted)
    SWEEP_RUNS.labels("warnings_sent").inc(result.warnings_sent)
    logger.info(
        f"Expiration sweep: {result.rejected_deleted} rejected removed, "
        f"{result.expired_deleted} expired removed, {result.warnings_sent} warnings"
    )
    return result
