"""
Dependencies for the identity-provider webhook endpoint.

The config and verifier are built per request from settings so tests can
swap them through ``app.dependency_overrides``.

Usage:
    @router.post("")
    async def receive(
        verifier: SignatureVerifier = Depends(get_signature_verifier),
    ):
        ...
"""
from fastapi import Depends

from fintrack.domain.services.signature_verifier import SignatureVerifier
from fintrack.domain.services.webhook_config import WebhookConfig


def get_webhook_config() -> WebhookConfig:
    return WebhookConfig.from_settings()


def get_signature_verifier(
    config: WebhookConfig = Depends(get_webhook_config),
) -> SignatureVerifier:
    return SignatureVerifier(config.signing_secret, config.signature_tolerance_seconds)
