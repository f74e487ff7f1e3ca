"""
API Routes
"""
from fastapi import APIRouter

from fintrack.api.routes.users import router as users_router
from fintrack.api.routes.webhook_admin import router as webhook_admin_router
from fintrack.api.webhooks.identity import router as identity_webhook_router

router = APIRouter()

router.include_router(identity_webhook_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(webhook_admin_router, prefix="/webhooks", tags=["Webhook Admin"])
router.include_router(users_router, prefix="/users", tags=["Users"])
