"""
Webhook pipeline configuration.

Built once from Settings and handed to the verifier, ingress service and retry
scheduler at construction, so tests can run the pipeline with their own values.
"""
from dataclasses import dataclass

from fintrack.core.config import Settings, settings as app_settings


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for identity webhook ingestion and retry"""
    signing_secret: str
    signature_tolerance_seconds: int = 300
    max_retries: int = 5
    retry_base_seconds: float = 1.0         # delay of the first retry
    retry_max_backoff_seconds: float = 300.0  # cap before jitter
    retry_jitter_seconds: float = 1.0       # uniform [0, jitter) added to every delay
    retry_interval_seconds: float = 60.0    # scheduler cadence
    retry_batch_size: int = 10
    stale_pending_seconds: int = 600
    health_failure_threshold: int = 10
    health_recent_limit: int = 10

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "WebhookConfig":
        s = source or app_settings
        return cls(
            signing_secret=s.CLERK_WEBHOOK_SECRET,
            signature_tolerance_seconds=s.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS,
            max_retries=s.WEBHOOK_MAX_RETRIES,
            retry_base_seconds=s.WEBHOOK_RETRY_BASE_SECONDS,
            retry_max_backoff_seconds=s.WEBHOOK_RETRY_MAX_BACKOFF_SECONDS,
            retry_jitter_seconds=s.WEBHOOK_RETRY_JITTER_SECONDS,
            retry_interval_seconds=s.WEBHOOK_RETRY_INTERVAL_SECONDS,
            retry_batch_size=s.WEBHOOK_RETRY_BATCH_SIZE,
            stale_pending_seconds=s.WEBHOOK_STALE_PENDING_SECONDS,
            health_failure_threshold=s.WEBHOOK_HEALTH_FAILURE_THRESHOLD,
            health_recent_limit=s.WEBHOOK_HEALTH_RECENT_LIMIT,
        )
