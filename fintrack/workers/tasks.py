"""
Celery Tasks for Webhook Reconciliation

Worker-side counterpart of the in-process retry worker, for deployments that
run Celery beat/worker processes instead.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from fintrack.workers.celery_app import celery_app
from fintrack.core.config import settings
from fintrack.core.logging import get_logger, set_correlation_id
from fintrack.db.database import get_task_session, task_session_factory
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_log_service import WebhookLogService
from fintrack.domain.services.webhook_retry_service import WebhookRetryService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="fintrack.workers.tasks.retry_failed_webhooks")
def retry_failed_webhooks():
    """One retry scan over due webhook events"""

    async def _scan():
        async with task_session_factory() as session_factory:
            service = WebhookRetryService(session_factory, WebhookConfig.from_settings())
            result = await service.run_once()
            return result.to_dict()

    return run_async(_scan())


@celery_app.task(name="fintrack.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None):
    """Purge processed webhook events past the retention period"""
    retention_days = days if days is not None else settings.WEBHOOK_LOG_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
            deleted = await WebhookLogService(db).purge_processed_events(cutoff)
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": retention_days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
