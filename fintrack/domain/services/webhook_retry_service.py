"""
Webhook Retry Service - periodic reprocessing of failed deliveries.

``WebhookRetryService.run_once`` performs one scan: it loads the due events,
then reprocesses each in its own session so one bad event (or a store error
while recording it) never aborts the rest of the batch.
``WebhookRetryWorker`` runs that scan on an interval inside the web process;
split deployments run the same scan from Celery beat instead.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fintrack.core.exceptions import WebhookAlreadyProcessedError, WebhookEventNotFoundError
from fintrack.core.logging import get_logger, log_async_operation
from fintrack.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_log_service import WebhookLogService
from fintrack.domain.services.webhook_processing import (
    Dispatcher,
    FailureOutcome,
    dispatch_event,
    process_logged_event,
)

logger = get_logger(__name__)


@dataclass
class RetryScanResult:
    scanned: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "succeeded": self.succeeded,
            "rescheduled": self.rescheduled,
            "failed": self.failed,
            "errors": self.errors,
        }


async def retry_event_now(
    db: AsyncSession,
    event_id: str,
    config: WebhookConfig,
    dispatcher: Dispatcher = dispatch_event,
) -> tuple[WebhookEvent, FailureOutcome | None]:
    """
    Reprocess a single event on operator request, outside the schedule.

    The outcome is recorded with the same policy the scheduler uses.

    Raises:
        WebhookEventNotFoundError: unknown event id.
        WebhookAlreadyProcessedError: the event already succeeded.
    """
    log_service = WebhookLogService(db)
    event = await log_service.get_event(event_id)
    if event is None:
        raise WebhookEventNotFoundError(event_id)
    if event.is_processed:
        raise WebhookAlreadyProcessedError(event_id)

    logger.info(
        "Manual webhook retry",
        extra_data={"event_id": event_id, "attempt": event.attempt, "status": event.status},
    )
    outcome = await process_logged_event(
        db, event, config, dispatcher, backoff_attempt=event.attempt + 1
    )

    await db.refresh(event)
    return event, outcome


class WebhookRetryService:
    """Reprocesses due events from the webhook log"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: WebhookConfig,
        dispatcher: Dispatcher = dispatch_event,
        rng: Callable[[], float] = random.random,
    ):
        self.session_factory = session_factory
        self.config = config
        self.dispatcher = dispatcher
        self.rng = rng

    async def _load_due_event_ids(self) -> list[str]:
        async with self.session_factory() as db:
            events = await WebhookLogService(db).find_due_for_retry(
                limit=self.config.retry_batch_size,
                stale_pending_after=self.config.stale_pending_seconds,
            )
            return [event.event_id for event in events]

    async def _retry_one(self, event_id: str) -> FailureOutcome | None | bool:
        """Returns False when the event no longer needs work"""
        async with self.session_factory() as db:
            event = await WebhookLogService(db).get_event(event_id)
            if event is None or event.is_processed:
                return False
            return await process_logged_event(
                db,
                event,
                self.config,
                self.dispatcher,
                backoff_attempt=event.attempt + 1,
                rng=self.rng,
            )

    @log_async_operation("webhook retry scan")
    async def run_once(self) -> RetryScanResult:
        result = RetryScanResult()
        event_ids = await self._load_due_event_ids()
        result.scanned = len(event_ids)

        for event_id in event_ids:
            try:
                outcome = await self._retry_one(event_id)
            except Exception as exc:
                result.errors += 1
                logger.error(
                    "Webhook retry could not be recorded",
                    extra_data={"event_id": event_id, "error": str(exc)},
                    exc_info=True,
                )
                continue

            if outcome is False:
                continue
            if outcome is None:
                result.succeeded += 1
            elif outcome.status == WebhookEventStatus.RETRYING:
                result.rescheduled += 1
            else:
                result.failed += 1

        if result.scanned:
            logger.info("Webhook retry scan finished", extra_data=result.to_dict())
        return result


class WebhookRetryWorker:
    """Runs ``WebhookRetryService.run_once`` every ``interval_seconds`` until stopped"""

    def __init__(self, service: WebhookRetryService, interval_seconds: float | None = None):
        self.service = service
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else service.config.retry_interval_seconds
        )
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="webhook-retry-worker")
        logger.info(
            "Webhook retry worker started",
            extra_data={"interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Webhook retry worker stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.service.run_once()
            except Exception:
                # e.g. database unreachable; try again next tick
                logger.exception("Webhook retry scan failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
