"""
Webhook Ingress Service - verify, log, process, respond.

A delivery is authenticated first; nothing is logged for a rejected request.
Authentic deliveries are logged as ``pending`` before the first processing
attempt, so every accepted event is durable even if processing crashes. Once
logged, the provider always gets a 2xx: processing failures are recorded and
left to the retry scheduler instead of being surfaced as 5xx.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.core.logging import get_logger
from fintrack.db.models.webhook_event import WebhookEventStatus
from fintrack.domain.identity_events import extract_subject_id
from fintrack.domain.services.signature_verifier import SignatureVerifier
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_log_service import WebhookLogService
from fintrack.domain.services.webhook_processing import (
    Dispatcher,
    dispatch_event,
    process_logged_event,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngressResult:
    status: str
    event: str
    subject_id: str
    next_retry: datetime | None = None
    duplicate: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "event": self.event,
            "subjectId": self.subject_id,
        }
        if self.next_retry is not None:
            body["nextRetry"] = self.next_retry.isoformat()
        if self.duplicate:
            body["duplicate"] = True
        return body


class WebhookIngressService:
    """Handles one identity-provider delivery end to end"""

    def __init__(
        self,
        db: AsyncSession,
        config: WebhookConfig,
        verifier: SignatureVerifier | None = None,
        dispatcher: Dispatcher = dispatch_event,
    ):
        self.db = db
        self.config = config
        self.verifier = verifier or SignatureVerifier(
            config.signing_secret, config.signature_tolerance_seconds
        )
        self.dispatcher = dispatcher
        self.log_service = WebhookLogService(db)

    async def handle(self, body: bytes, headers: Mapping[str, str]) -> IngressResult:
        """
        Process a raw delivery.

        Raises:
            MissingHeadersError, VerificationFailedError, InvalidPayloadError:
                request rejected, nothing logged.
        """
        verified = self.verifier.verify(body, headers)
        subject_id = extract_subject_id(verified.payload)

        logger.info(
            "Webhook received",
            extra_data={
                "event_id": verified.event_id,
                "event_type": verified.type,
                "subject_id": subject_id,
            },
        )

        event = await self.log_service.log_event(
            event_id=verified.event_id,
            event_type=verified.type,
            subject_id=subject_id,
            payload=verified.payload,
            initial_status=WebhookEventStatus.PENDING,
            max_retries=self.config.max_retries,
        )

        if event.is_processed:
            logger.info(
                "Webhook already processed, skipping",
                extra_data={"event_id": verified.event_id},
            )
            return IngressResult(
                status=WebhookEventStatus.SUCCESS.value,
                event=verified.type,
                subject_id=subject_id,
                duplicate=True,
            )

        failure = await process_logged_event(
            self.db, event, self.config, self.dispatcher
        )
        if failure is None:
            return IngressResult(
                status=WebhookEventStatus.SUCCESS.value,
                event=verified.type,
                subject_id=subject_id,
            )

        return IngressResult(
            status="acknowledged",
            event=verified.type,
            subject_id=subject_id,
            next_retry=failure.next_retry_at,
        )
