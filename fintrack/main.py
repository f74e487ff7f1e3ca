"""
FinTrack - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from fintrack.core.config import settings
from fintrack.core.logging import setup_logging, get_logger
from fintrack.core.middleware import setup_middleware, setup_exception_handlers
from fintrack.api.routes import router as api_router
from fintrack.db.database import engine, Base, AsyncSessionLocal
from fintrack.domain.services.health_service import check_readiness
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_retry_service import WebhookRetryService, WebhookRetryWorker

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "User lifecycle events from the identity provider (Svix-signed).",
    },
    {
        "name": "Webhook Admin",
        "description": "Operator tools: pipeline health, event log, manual retry and fallback user creation.",
    },
    {"name": "Users", "description": "Local user records mirrored from the identity provider."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "FinTrack backend: keeps the local user store in sync with the identity "
        "provider through durable, retried webhook processing."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and start the retry worker"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    app.state.retry_worker = None
    if settings.WEBHOOK_RETRY_WORKER_ENABLED:
        worker = WebhookRetryWorker(
            WebhookRetryService(AsyncSessionLocal, WebhookConfig.from_settings())
        )
        worker.start()
        app.state.retry_worker = worker


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    worker = getattr(app.state, "retry_worker", None)
    if worker is not None:
        await worker.stop()
    # close pooled connections so the process exits cleanly
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description=(
        "Lightweight check that the process is up. Does not touch external "
        "dependencies, so a database outage never triggers a restart."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the database and the Celery broker; 503 when either is unavailable.",
    responses={
        200: {
            "description": "All dependencies available",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "celery": "error: celery_unavailable",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - checks every external dependency."""
    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
