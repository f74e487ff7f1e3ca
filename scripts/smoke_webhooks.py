"""
Smoke tests for a running instance.

Signs and posts sample identity events with the configured secret:
- GET /health
- POST /api/webhooks  user.created, then the same delivery again
- POST /api/webhooks  user.updated, user.deleted
- POST /api/webhooks  without signature headers (expects 400)

The smoke user is deleted at the end, so the script can be re-run.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from pathlib import Path

import httpx

# allow running from any directory (e.g. `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fintrack.core.config import settings  # noqa: E402
from fintrack.core.logging import get_logger, setup_logging  # noqa: E402
from fintrack.domain.services.signature_verifier import SignatureVerifier  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _user_data(subject_id: str, first_name: str) -> dict:
    return {
        "id": subject_id,
        "email_addresses": [{"id": "idn_smoke", "email_address": f"{subject_id}@smoke.fintrack.test"}],
        "primary_email_address_id": "idn_smoke",
        "first_name": first_name,
        "last_name": "Check",
        "image_url": None,
        "username": None,
        "last_sign_in_at": int(time.time() * 1000),
    }


def _signed_request(verifier: SignatureVerifier, event_type: str, data: dict, event_id: str | None = None):
    event_id = event_id or f"msg_{uuid.uuid4().hex}"
    body = json.dumps({"type": event_type, "data": data, "object": "event"}).encode()
    timestamp = int(time.time())
    headers = {
        "content-type": "application/json",
        "svix-id": event_id,
        "svix-timestamp": str(timestamp),
        "svix-signature": verifier.sign(event_id, timestamp, body),
    }
    return event_id, body, headers


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="fintrack-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    verifier = SignatureVerifier(settings.CLERK_WEBHOOK_SECRET)
    subject_id = f"user_smoke_{uuid.uuid4().hex[:8]}"
    webhook_url = f"{base_url}/api/webhooks"

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)

        event_id, body, headers = _signed_request(verifier, "user.created", _user_data(subject_id, "Smoke"))
        logger.info("Posting user.created", extra_data={"event_id": event_id})
        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp)
        logger.info("user.created response", extra_data=resp.json())

        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp)
        logger.info("Redelivery response", extra_data=resp.json())

        _, body, headers = _signed_request(verifier, "user.updated", _user_data(subject_id, "Smokey"))
        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp)

        resp = client.get(f"{base_url}/api/users/{subject_id}")
        _check_status(resp)
        logger.info("Synced user", extra_data={"first_name": resp.json().get("firstName")})

        _, body, headers = _signed_request(verifier, "user.deleted", {"id": subject_id, "deleted": True})
        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp)

        resp = client.post(webhook_url, content=body, headers={"content-type": "application/json"})
        _check_status(resp, expected_family=4)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
