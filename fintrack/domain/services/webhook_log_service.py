"""
Webhook Log Service - durable record of identity-provider deliveries.

Every accepted delivery gets exactly one row keyed by the provider event id.
Redeliveries hit the same row: the insert is attempted optimistically inside a
savepoint and a unique-key conflict falls back to refreshing the payload, so
the lifecycle fields (status, attempt) are never reset by a duplicate.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.logging import get_logger
from fintrack.db.models.webhook_event import WebhookEvent, WebhookEventStatus, utcnow

logger = get_logger(__name__)

_RETRYABLE_STATUSES = (WebhookEventStatus.RETRYING.value, WebhookEventStatus.FAILURE.value)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class WebhookLogService:
    """Owns all writes to ``webhook_events``"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def log_event(
        self,
        event_id: str,
        event_type: str,
        subject_id: str,
        payload: dict[str, Any],
        initial_status: WebhookEventStatus = WebhookEventStatus.PENDING,
        max_retries: int = 5,
    ) -> WebhookEvent:
        """
        Insert-or-refresh the row for ``event_id`` and commit.

        An existing row keeps its status and attempt; only the payload is
        replaced with the latest delivery.
        """
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    insert(WebhookEvent).values(
                        event_id=event_id,
                        event_type=event_type,
                        subject_id=subject_id,
                        status=initial_status.value,
                        attempt=1,
                        max_retries=max_retries,
                        payload=payload,
                    )
                )
            await self.db.commit()
        except IntegrityError:
            logger.info(
                "Duplicate webhook delivery",
                extra_data={"event_id": event_id, "event_type": event_type},
            )
            await self.db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(payload=payload, updated_at=utcnow())
            )
            await self.db.commit()

        event = await self.get_event(event_id)
        if event is None:
            # deleted between the conflict and the read; nothing sensible to return
            raise LookupError(f"Webhook event {event_id} vanished while logging")
        await self.db.refresh(event)
        return event

    async def update_status(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error: str | None = None,
        next_retry_at: datetime | None = None,
    ) -> None:
        """
        Move an event to ``status`` and commit.

        success  -> processed_at=now, error and next_retry_at cleared
        retrying -> attempt += 1 (atomic), error and next_retry_at stored
        failure  -> attempt unchanged, error stored, next_retry_at cleared
        pending  -> only the status and error are touched
        """
        now = utcnow()
        values: dict[str, Any] = {"status": status.value, "updated_at": now}

        if status == WebhookEventStatus.SUCCESS:
            values.update(processed_at=now, error=None, next_retry_at=None)
        elif status == WebhookEventStatus.RETRYING:
            values.update(
                attempt=WebhookEvent.attempt + 1,
                error=error,
                next_retry_at=next_retry_at,
            )
        elif status == WebhookEventStatus.FAILURE:
            values.update(error=error, next_retry_at=None)
        else:
            values.update(error=error)

        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(**values)
        )
        await self.db.commit()

        logger.info(
            "Webhook status updated",
            extra_data={"event_id": event_id, "status": status.value},
        )

    async def find_due_for_retry(
        self,
        limit: int = 10,
        now: datetime | None = None,
        stale_pending_after: int | None = None,
    ) -> list[WebhookEvent]:
        """
        Events the scheduler should pick up, oldest due first.

        Retryable rows (``retrying``/``failure`` with ``next_retry_at <= now``
        and attempts left) plus, when ``stale_pending_after`` is given,
        ``pending`` rows untouched for that many seconds: a process that died
        between logging and recording the outcome leaves those behind.
        """
        now = now or utcnow()
        conditions = [
            and_(
                WebhookEvent.status.in_(_RETRYABLE_STATUSES),
                WebhookEvent.next_retry_at.is_not(None),
                WebhookEvent.next_retry_at <= now,
            )
        ]
        if stale_pending_after is not None:
            conditions.append(
                and_(
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    WebhookEvent.updated_at <= now - timedelta(seconds=stale_pending_after),
                )
            )

        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                or_(*conditions),
                WebhookEvent.attempt < WebhookEvent.max_retries,
            )
            .order_by(WebhookEvent.next_retry_at.asc(), WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in WebhookEventStatus}
        result = await self.db.execute(
            select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
        )
        for status, count in result.all():
            counts[status] = count
        return counts

    async def get_health_summary(self, recent_limit: int = 10) -> dict[str, Any]:
        """Counts per status plus the most recently touched failing/retrying events"""
        counts = await self.count_by_status()
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status.in_(_RETRYABLE_STATUSES))
            .order_by(WebhookEvent.updated_at.desc())
            .limit(recent_limit)
        )
        return {
            "stats": counts,
            "recent_failures": list(result.scalars().all()),
        }

    async def list_events(
        self,
        status: str | None = None,
        event_type: str | None = None,
        subject_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[WebhookEvent], int]:
        """Filtered page of events, newest first, with the unpaged total"""
        filters = []
        if status:
            filters.append(WebhookEvent.status == status)
        if event_type:
            filters.append(WebhookEvent.event_type == event_type)
        if subject_id:
            filters.append(WebhookEvent.subject_id == subject_id)

        total_result = await self.db.execute(
            select(func.count()).select_from(WebhookEvent).where(*filters)
        )
        total = total_result.scalar_one()

        page = max(page, 1)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(*filters)
            .order_by(WebhookEvent.created_at.desc(), WebhookEvent.event_id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def purge_processed_events(self, older_than: datetime) -> int:
        """Delete ``success`` rows processed before ``older_than``; returns the count"""
        result = await self.db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.status == WebhookEventStatus.SUCCESS.value,
                WebhookEvent.processed_at < older_than,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
