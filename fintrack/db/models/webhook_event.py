"""
Webhook Event Model - durable log of every identity-provider delivery.

One row per provider event id (``svix-id``). The row is the system of record
for delivery and processing status; the retry scheduler and the operator API
read it, and only WebhookLogService writes it.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index

from fintrack.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILURE = "failure"


class WebhookEventType(str, enum.Enum):
    """Event types with a processor; anything else is accepted and acknowledged"""
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"


class WebhookEvent(Base):
    """Webhook delivery with processing status and retry metadata"""

    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    subject_id = Column(String(200), nullable=False, index=True)

    # plain strings so unknown statuses from older rows never break loading
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PENDING.value, index=True)
    attempt = Column(Integer, nullable=False, default=1)
    max_retries = Column(Integer, nullable=False, default=5)

    payload = Column(JSON, nullable=False)
    error = Column(Text, nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_webhook_events_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_events_status_updated", "status", "updated_at"),
    )

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.SUCCESS.value
