"""
Database Models
"""
from fintrack.db.models.user import User
from fintrack.db.models.webhook_event import WebhookEvent, WebhookEventStatus, WebhookEventType

__all__ = [
    "User",
    "WebhookEvent",
    "WebhookEventStatus",
    "WebhookEventType",
]
