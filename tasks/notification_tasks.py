"""
tasks/notification_tasks.py
Celery task for FCM push delivery of in-app notifications.

The Notification row is written by the API or the sweep before this
task is queued; the task only pushes it and records that it did.
Idempotent: a notification already pushed is skipped.

Usage:
    from tasks.notification_tasks import deliver_push_notification
    deliver_push_notification.delay(str(notification.id))
"""

import logging
import uuid

from celery import Task

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Base Task with DB session ──────────────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """Convert the async driver URL to its synchronous counterpart."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _engine = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        from sqlalchemy import create_engine
        from sqlalchemy.orm import sessionmaker

        if DatabaseTask._engine is None:
            DatabaseTask._engine = create_engine(
                sync_database_url(settings.DATABASE_URL), pool_pre_ping=True
            )
        Session = sessionmaker(bind=DatabaseTask._engine)
        return Session()


# ── Core Delivery Function ─────────────────────────────────────────────────────

def _send_fcm(fcm_token: str, title: str, body: str, data: dict = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        import firebase_admin
        from firebase_admin import credentials, messaging

        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
            firebase_admin.initialize_app(cred)

        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message)
        return True
    except Exception as e:
        logger.warning(f"FCM send failed: {e}")
        return False


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def deliver_push_notification(self, notification_id: str) -> bool:
    """
    Push one stored notification to its recipient's device.
    Returns False when there is nothing to deliver (no device token,
    inactive user, already pushed); retries with backoff on FCM failure.
    """
    from shared.models.models import Notification, User

    db = self.get_session()
    try:
        notification = db.get(Notification, uuid.UUID(notification_id))
        if not notification:
            logger.error(f"deliver_push_notification: notification {notification_id} not found")
            return False
        if notification.sent_push:
            return False

        user = db.get(User, notification.user_id)
        if not user or not user.is_active or not user.fcm_token:
            return False

        data = {"notification_id": notification_id, "type": notification.type.value}
        if notification.listing_id:
            data["listing_id"] = str(notification.listing_id)

        if not _send_fcm(user.fcm_token, notification.title, notification.body, data):
            raise self.retry(countdown=60 * (2 ** self.request.retries))

        notification.sent_push = True
        db.commit()
        return True
    finally:
        db.close()
