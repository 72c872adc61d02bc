"""
tasks/celery_app.py
Celery application instance: shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "saman_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.listing_tasks",
        "tasks.notification_tasks",
        "tasks.payment_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Retry: max 3 retries with exponential backoff
    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.deliver_push_notification": {"rate_limit": "30/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.payment_tasks.*": {"queue": "payments"},
        "tasks.listing_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Purge stale rejected + expired listings, warn owners before expiry
    "run-expiration-sweep": {
        "task": "tasks.listing_tasks.run_listing_sweep",
        "schedule": settings.LISTING_SWEEP_INTERVAL_SECONDS,
    },

    # Ask Telr about purchases whose return/callback never arrived
    "reconcile-pending-transactions": {
        "task": "tasks.payment_tasks.reconcile_pending_transactions",
        "schedule": settings.PENDING_TRANSACTION_RECONCILE_MINUTES * 60,
    },
}
