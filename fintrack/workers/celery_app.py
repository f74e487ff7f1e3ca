"""
Celery Application Configuration
"""
from celery import Celery

from fintrack.core.config import settings

celery_app = Celery(
    "fintrack",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["fintrack.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "retry-failed-webhooks": {
        "task": "fintrack.workers.tasks.retry_failed_webhooks",
        "schedule": settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "fintrack.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
