"""
Webhook processing - event dispatch, retry backoff and the shared failure policy.

The ingress handler, the retry scheduler and the manual retry endpoint all run
events through ``dispatch_event`` and record failures through
``record_failure``, so an event ends up in the same state whichever path
processed it.
"""
from __future__ import annotations

import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.exceptions import is_permanent_failure
from fintrack.core.logging import get_logger
from fintrack.db.models.webhook_event import WebhookEvent, WebhookEventStatus, utcnow
from fintrack.domain.identity_events import (
    UnknownEvent,
    UserCreatedEvent,
    UserDeletedEvent,
    UserUpdatedEvent,
    decode_event,
)
from fintrack.domain.services.user_sync_service import UserSyncService
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_log_service import WebhookLogService

logger = get_logger(__name__)

Dispatcher = Callable[[AsyncSession, dict[str, Any]], Awaitable[bool]]


def calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    Deterministic part of the retry delay.

        backoff = min(base_seconds * 2 ** (attempt - 1), max_backoff_seconds)

    Attempts past the point where the cap is reached return the cap directly,
    so a huge attempt number never builds a huge power.
    """
    if attempt < 1:
        attempt = 1

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    # smallest exponent whose doubling reaches the cap
    threshold = math.ceil(math.log2(max_backoff_seconds / base_seconds))
    exponent = attempt - 1
    if exponent >= threshold:
        return float(max_backoff_seconds)

    return min(base_seconds * (1 << exponent), float(max_backoff_seconds))


def calculate_retry_delay(
    attempt: int,
    config: WebhookConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """Backoff plus uniform jitter in ``[0, retry_jitter_seconds)``"""
    backoff = calculate_backoff_seconds(
        attempt,
        base_seconds=config.retry_base_seconds,
        max_backoff_seconds=config.retry_max_backoff_seconds,
    )
    return backoff + rng() * config.retry_jitter_seconds


async def dispatch_event(db: AsyncSession, payload: dict[str, Any]) -> bool:
    """
    Decode a stored ``{type, data}`` envelope and run its processor.

    Unknown event types have no processor and count as handled.

    Raises:
        MalformedEventError: known type whose data does not validate.
        Exception: anything the processor raises.
    """
    event = decode_event(payload)
    service = UserSyncService(db)

    if isinstance(event, UserCreatedEvent):
        return await service.process_user_creation(event.data)
    if isinstance(event, UserUpdatedEvent):
        return await service.process_user_update(event.data)
    if isinstance(event, UserDeletedEvent):
        return await service.process_user_deletion(event.data)

    logger.info(
        "Unhandled webhook event type",
        extra_data={"event_type": event.type if isinstance(event, UnknownEvent) else None},
    )
    return True


@dataclass(frozen=True)
class FailureOutcome:
    status: WebhookEventStatus
    error: str
    next_retry_at: datetime | None = None


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


async def record_failure(
    log_service: WebhookLogService,
    event: WebhookEvent,
    error: str,
    config: WebhookConfig,
    *,
    permanent: bool = False,
    backoff_attempt: int | None = None,
    rng: Callable[[], float] = random.random,
) -> FailureOutcome:
    """
    Record a failed processing attempt.

    Permanent errors and events whose next attempt would reach ``max_retries``
    go to ``failure``; everything else is rescheduled as ``retrying`` with
    ``next_retry_at = now + delay(backoff_attempt)``.
    """
    # read before rollback: rollback expires the instance
    event_id, attempt, max_retries = event.event_id, event.attempt, event.max_retries

    # the failed processor may have left the transaction unusable
    await log_service.db.rollback()

    if permanent or attempt + 1 >= max_retries:
        await log_service.update_status(
            event_id, WebhookEventStatus.FAILURE, error=error
        )
        logger.warning(
            "Webhook marked as failed",
            extra_data={
                "event_id": event_id,
                "attempt": attempt,
                "permanent": permanent,
                "error": error,
            },
        )
        return FailureOutcome(status=WebhookEventStatus.FAILURE, error=error)

    delay = calculate_retry_delay(
        backoff_attempt if backoff_attempt is not None else attempt,
        config,
        rng,
    )
    next_retry_at = utcnow() + timedelta(seconds=delay)
    await log_service.update_status(
        event_id,
        WebhookEventStatus.RETRYING,
        error=error,
        next_retry_at=next_retry_at,
    )
    logger.info(
        "Webhook scheduled for retry",
        extra_data={
            "event_id": event_id,
            "attempt": attempt + 1,
            "delay_seconds": round(delay, 3),
        },
    )
    return FailureOutcome(
        status=WebhookEventStatus.RETRYING,
        error=error,
        next_retry_at=next_retry_at,
    )


async def process_logged_event(
    db: AsyncSession,
    event: WebhookEvent,
    config: WebhookConfig,
    dispatcher: Dispatcher = dispatch_event,
    *,
    backoff_attempt: int | None = None,
    rng: Callable[[], float] = random.random,
) -> FailureOutcome | None:
    """
    Run one logged event through its processor and record the outcome.

    Returns None on success, else the recorded failure. Processing errors are
    recorded, never raised; only a store failure while recording escapes.
    """
    log_service = WebhookLogService(db)
    event_id, event_type = event.event_id, event.event_type

    try:
        handled = await dispatcher(db, event.payload)
    except Exception as exc:
        logger.error(
            "Webhook processing failed",
            extra_data={
                "event_id": event_id,
                "event_type": event_type,
                "error_type": exc.__class__.__name__,
            },
            exc_info=True,
        )
        return await record_failure(
            log_service,
            event,
            describe_error(exc),
            config,
            permanent=is_permanent_failure(exc),
            backoff_attempt=backoff_attempt,
            rng=rng,
        )

    if not handled:
        return await record_failure(
            log_service,
            event,
            "Processor reported failure",
            config,
            backoff_attempt=backoff_attempt,
            rng=rng,
        )

    await log_service.update_status(event_id, WebhookEventStatus.SUCCESS)
    return None
