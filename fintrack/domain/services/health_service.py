"""
Health checks - process liveness, dependency readiness and webhook pipeline health.

Readiness checks:
- db: lightweight ``SELECT 1``
- celery: PING to the broker (Redis)

Error strings are generic so infrastructure details never leak into the response.
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from fintrack.core.config import settings
from fintrack.core.logging import get_logger
from fintrack.db.database import AsyncSessionLocal
from fintrack.db.models.webhook_event import WebhookEventStatus

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_celery() -> str:
    """Celery workers are reachable only through the broker, so ping it"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    Check every external dependency.

    Returns ``{"status": "healthy" | "degraded", "db": ..., "celery": ...}``.
    """
    checks = {
        "db": await _check_db(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}


def is_webhook_pipeline_healthy(stats: dict[str, int], failure_threshold: int) -> bool:
    """Unhealthy once terminal failures reach ``failure_threshold``"""
    return stats.get(WebhookEventStatus.FAILURE.value, 0) < failure_threshold
