"""
services/notification/dispatch.py
Records in-app notifications and hands them to the push worker.

Recording happens inside the caller's transaction so the inbox row
commits together with the state change it describes. Push delivery is
queued only after that commit and is best effort.
"""

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationType, User

logger = logging.getLogger(__name__)


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    NotificationType.LISTING_APPROVED: {
        "title": "Listing Approved",
        "body": 'Your listing "{title}" has been approved and is now live!',
    },
    NotificationType.LISTING_REJECTED: {
        "title": "Listing Rejected",
        "body": 'Your listing "{title}" was rejected: {reason}',
    },
    NotificationType.LISTING_DELETED: {
        "title": "Listing Removed",
        "body": 'Your listing "{title}" was removed by an administrator: {reason}',
    },
    NotificationType.LISTING_EXPIRING: {
        "title": "Listing Expiring Soon",
        "body": 'Your listing "{title}" expires in less than {hours} hours. Renew it to keep it live.',
    },
    NotificationType.NEW_LISTING: {
        "title": "New Listing Submitted",
        "body": '{seller} submitted "{title}" for review',
    },
    NotificationType.CREDITS_ADDED: {
        "title": "Credits Added",
        "body": "{credits} {category} credits have been added to your account!",
    },
    NotificationType.PAYMENT_FAILED: {
        "title": "Payment Failed",
        "body": "Your payment for {credits} {category} credits could not be completed.",
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def render(ntype: NotificationType, **kwargs) -> tuple[str, str]:
    tmpl = TEMPLATES[ntype]
    return _render(tmpl["title"], **kwargs), _render(tmpl["body"], **kwargs)


# ── Recording ─────────────────────────────────────────────────

async def record_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    ntype: NotificationType,
    title: str,
    body: str,
    listing_id: Optional[uuid.UUID] = None,
    data: Optional[dict] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=ntype,
        title=title,
        body=body,
        listing_id=listing_id,
        data={"type": ntype.value, **(data or {})},
    )
    db.add(notification)
    await db.flush()
    return notification


async def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    ntype: NotificationType,
    listing_id: Optional[uuid.UUID] = None,
    data: Optional[dict] = None,
    **template_vars,
) -> Notification:
    """Render a template and record it for one user."""
    title, body = render(ntype, **template_vars)
    if listing_id is not None:
        data = {"listing_id": str(listing_id), **(data or {})}
    return await record_notification(db, user_id, ntype, title, body, listing_id, data)


async def notify_admins(
    db: AsyncSession,
    ntype: NotificationType,
    listing_id: Optional[uuid.UUID] = None,
    **template_vars,
) -> list[Notification]:
    admin_ids = (
        await db.scalars(
            select(User.id).where(User.is_admin.is_(True), User.is_active.is_(True))
        )
    ).all()
    return [
        await notify(db, admin_id, ntype, listing_id=listing_id, **template_vars)
        for admin_id in admin_ids
    ]


# ── Push hand-off ─────────────────────────────────────────────

def enqueue_push(notification_ids: Iterable[uuid.UUID]) -> None:
    """
    Queue FCM delivery for already-committed notifications.
    A broker outage is logged and swallowed; the inbox row already exists.
    """
    from tasks.notification_tasks import deliver_push_notification

    for notification_id in notification_ids:
        try:
            deliver_push_notification.delay(str(notification_id))
        except Exception as e:
            logger.warning(f"Could not queue push for notification {notification_id}: {e}")
