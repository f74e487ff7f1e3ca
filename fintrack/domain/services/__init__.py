"""
Domain Services
"""
from fintrack.domain.services.signature_verifier import SignatureVerifier, VerifiedEvent
from fintrack.domain.services.user_sync_service import UserSyncService
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_ingress_service import IngressResult, WebhookIngressService
from fintrack.domain.services.webhook_log_service import WebhookLogService
from fintrack.domain.services.webhook_retry_service import (
    RetryScanResult,
    WebhookRetryService,
    WebhookRetryWorker,
)

__all__ = [
    "SignatureVerifier",
    "VerifiedEvent",
    "UserSyncService",
    "WebhookConfig",
    "IngressResult",
    "WebhookIngressService",
    "WebhookLogService",
    "RetryScanResult",
    "WebhookRetryService",
    "WebhookRetryWorker",
]
