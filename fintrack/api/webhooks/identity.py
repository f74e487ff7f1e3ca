"""
Identity-provider webhook endpoint (Clerk, Svix-signed).

The body is read raw: the signature covers the exact bytes sent, so it must be
verified before any JSON parsing.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.api.dependencies.webhook_auth import get_signature_verifier, get_webhook_config
from fintrack.db.database import get_db
from fintrack.domain.services.signature_verifier import SignatureVerifier
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.domain.services.webhook_ingress_service import WebhookIngressService

router = APIRouter()


@router.post(
    "",
    summary="Identity provider webhook",
    description=(
        "Receives user lifecycle events. Requires svix-id, svix-timestamp and "
        "svix-signature headers. Every authentic event is logged and answered "
        "with 200, even when processing fails and is scheduled for retry."
    ),
    responses={
        200: {"description": "Event processed or scheduled for retry"},
        400: {"description": "Missing headers, bad signature or malformed body"},
    },
)
async def receive_identity_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: WebhookConfig = Depends(get_webhook_config),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
) -> dict:
    body = await request.body()
    service = WebhookIngressService(db, config, verifier)
    result = await service.handle(body, request.headers)
    return result.to_response()
