"""
Webhook operator endpoints - observe and repair the webhook pipeline without DB access.

1. Health: counts per status plus recent failing events
2. Logs: filtered, paginated event list (payloads omitted)
3. Manual retry of a single event
4. Fallback user creation when the webhook never arrives
"""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.api.dependencies.admin_auth import require_admin_api_key
from fintrack.api.dependencies.webhook_auth import get_webhook_config
from fintrack.api.schemas import CamelModel, UserResponse
from fintrack.core.logging import get_logger
from fintrack.db.database import get_db
from fintrack.db.models.webhook_event import WebhookEventStatus
from fintrack.domain.services.health_service import is_webhook_pipeline_healthy
from fintrack.domain.services.user_sync_service import UserSyncService
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_log_service import WebhookLogService, ensure_utc
from fintrack.domain.services.webhook_retry_service import retry_event_now

logger = get_logger(__name__)

router = APIRouter()

_ADMIN_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong or unconfigured API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class WebhookEventResponse(CamelModel):
    """Webhook log entry without its payload"""
    event_id: str
    event_type: str
    subject_id: str
    status: str
    attempt: int
    max_retries: int
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("processed_at", "next_retry_at", "created_at", "updated_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class WebhookStatsResponse(CamelModel):
    success: int = 0
    failure: int = 0
    retrying: int = 0
    pending: int = 0


class WebhookHealthResponse(CamelModel):
    healthy: bool
    stats: WebhookStatsResponse
    recent_failures: list[WebhookEventResponse]


class PaginationResponse(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class WebhookLogsResponse(CamelModel):
    logs: list[WebhookEventResponse]
    pagination: PaginationResponse


class WebhookRetryResponse(CamelModel):
    """Outcome of a manual retry"""
    event_id: str
    status: str
    attempt: int
    error: Optional[str] = None
    next_retry: Optional[datetime] = None

    @field_validator("next_retry")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class FallbackUserRequest(CamelModel):
    """User details the client already has from the identity provider session"""
    subject_id: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    avatar: Optional[str] = Field(default=None, max_length=1000)
    username: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v


class FallbackUserResponse(CamelModel):
    created: bool
    user: UserResponse


# ─── 1. Health ──────────────────────────────────────────────────────────────

@router.get(
    "/health",
    response_model=WebhookHealthResponse,
    summary="Webhook pipeline health",
    description=(
        "Counts per status and the most recent failing/retrying events. "
        "Unhealthy once terminal failures reach the configured threshold."
    ),
    responses=_ADMIN_RESPONSES,
)
async def get_webhook_health(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    config: WebhookConfig = Depends(get_webhook_config),
) -> WebhookHealthResponse:
    summary = await WebhookLogService(db).get_health_summary(config.health_recent_limit)
    stats = summary["stats"]
    return WebhookHealthResponse(
        healthy=is_webhook_pipeline_healthy(stats, config.health_failure_threshold),
        stats=WebhookStatsResponse(**stats),
        recent_failures=[
            WebhookEventResponse.model_validate(event) for event in summary["recent_failures"]
        ],
    )


# ─── 2. Logs ────────────────────────────────────────────────────────────────

@router.get(
    "/logs",
    response_model=WebhookLogsResponse,
    summary="Webhook event log",
    description="Filter by status, event type and subject id; newest first.",
    responses=_ADMIN_RESPONSES,
)
async def list_webhook_logs(
    status_filter: Optional[WebhookEventStatus] = Query(None, alias="status"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    subject_id: Optional[str] = Query(None, alias="subjectId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookLogsResponse:
    events, total = await WebhookLogService(db).list_events(
        status=status_filter.value if status_filter else None,
        event_type=event_type,
        subject_id=subject_id,
        page=page,
        limit=limit,
    )
    return WebhookLogsResponse(
        logs=[WebhookEventResponse.model_validate(event) for event in events],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


# ─── 3. Manual retry ────────────────────────────────────────────────────────

@router.post(
    "/retry/{event_id}",
    response_model=WebhookRetryResponse,
    summary="Retry a webhook event now",
    description=(
        "Re-runs the processor once, outside the schedule. The outcome is "
        "recorded exactly like a scheduled retry."
    ),
    responses={
        **_ADMIN_RESPONSES,
        400: {"description": "Event already processed"},
        404: {"description": "Event not found"},
    },
)
async def retry_webhook_event(
    event_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    config: WebhookConfig = Depends(get_webhook_config),
) -> WebhookRetryResponse:
    event, failure = await retry_event_now(db, event_id, config)

    logger.info(
        "Manual webhook retry finished",
        extra_data={"event_id": event_id, "status": event.status},
    )
    return WebhookRetryResponse(
        event_id=event.event_id,
        status=event.status,
        attempt=event.attempt,
        error=failure.error if failure else None,
        next_retry=failure.next_retry_at if failure else None,
    )


# ─── 4. Fallback user ───────────────────────────────────────────────────────

@router.post(
    "/create-fallback",
    response_model=FallbackUserResponse,
    summary="Create a user without waiting for the webhook",
    description="Idempotent: 201 when the user was created, 200 with the existing record otherwise.",
    responses={
        **_ADMIN_RESPONSES,
        201: {"description": "User created"},
        200: {"description": "User already existed"},
    },
)
async def create_fallback_user(
    data: FallbackUserRequest,
    response: Response,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FallbackUserResponse:
    user, created = await UserSyncService(db).ensure_user(
        subject_id=data.subject_id,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        phone_number=data.phone_number,
        avatar=data.avatar,
        username=data.username,
    )
    if created:
        response.status_code = status.HTTP_201_CREATED

    logger.info(
        "Fallback user requested",
        extra_data={"subject_id": data.subject_id, "created": created},
    )
    return FallbackUserResponse(created=created, user=UserResponse.model_validate(user))
