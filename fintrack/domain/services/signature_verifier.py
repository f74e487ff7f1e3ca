"""
Signature Verifier: authenticity check for identity-provider webhooks.

Deliveries are signed with the Svix scheme:

    signed_content = f"{svix_id}.{svix_timestamp}.{body}"
    signature      = base64(HMAC-SHA256(secret, signed_content))
    svix-signature = "v1,<signature> [v1,<signature> ...]"

The secret is issued as ``whsec_<base64 key>``. Several signatures may be
present during secret rotation; any match is accepted. Verification has no
side effects, so a rejected request is never logged or processed.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from fintrack.core.config import WEBHOOK_SECRET_PREFIX
from fintrack.core.exceptions import (
    InvalidPayloadError,
    MissingHeadersError,
    VerificationFailedError,
)
from fintrack.core.logging import get_logger

logger = get_logger(__name__)

HEADER_EVENT_ID = "svix-id"
HEADER_TIMESTAMP = "svix-timestamp"
HEADER_SIGNATURE = "svix-signature"
REQUIRED_HEADERS = (HEADER_EVENT_ID, HEADER_TIMESTAMP, HEADER_SIGNATURE)

_SIGNATURE_VERSION = "v1"


@dataclass(frozen=True)
class VerifiedEvent:
    """Authenticated event envelope"""
    event_id: str
    timestamp: int
    type: str
    data: dict[str, Any]
    payload: dict[str, Any]


def _decode_secret(secret: str) -> bytes:
    if secret.startswith(WEBHOOK_SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(WEBHOOK_SECRET_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Webhook secret has the whsec_ prefix but is not valid base64")
    return secret.encode()


class SignatureVerifier:
    """Verifies Svix-signed webhook deliveries with a pre-shared secret"""

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._configured = bool(secret)
        self._key = _decode_secret(secret) if secret else b""
        self._tolerance = tolerance_seconds
        self._clock = clock

    def sign(self, event_id: str, timestamp: int, body: bytes) -> str:
        """Build a ``svix-signature`` header value for ``body``"""
        signed_content = f"{event_id}.{timestamp}.".encode() + body
        digest = hmac.new(self._key, signed_content, hashlib.sha256).digest()
        return f"{_SIGNATURE_VERSION},{base64.b64encode(digest).decode()}"

    @staticmethod
    def extract_headers(headers: Mapping[str, str]) -> tuple[str, str, str]:
        """
        Pull the three Svix headers out of ``headers`` (case-insensitive).

        Raises:
            MissingHeadersError: any of them is absent or empty.
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        missing = [name for name in REQUIRED_HEADERS if not lowered.get(name)]
        if missing:
            raise MissingHeadersError(missing)
        return (
            lowered[HEADER_EVENT_ID],
            lowered[HEADER_TIMESTAMP],
            lowered[HEADER_SIGNATURE],
        )

    def _check_timestamp(self, raw_timestamp: str) -> int:
        try:
            timestamp = int(raw_timestamp)
        except (TypeError, ValueError):
            raise VerificationFailedError("invalid_timestamp")

        now = self._clock()
        if now - timestamp > self._tolerance:
            raise VerificationFailedError("timestamp_too_old")
        if timestamp - now > self._tolerance:
            raise VerificationFailedError("timestamp_too_new")
        return timestamp

    def _check_signature(self, event_id: str, timestamp: int, body: bytes, header: str) -> None:
        expected = self.sign(event_id, timestamp, body).split(",", 1)[1]
        for candidate in header.split():
            version, _, signature = candidate.partition(",")
            if version != _SIGNATURE_VERSION or not signature:
                continue
            if hmac.compare_digest(signature, expected):
                return
        raise VerificationFailedError("signature_mismatch")

    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """
        Authenticate ``body`` and decode its ``{type, data}`` envelope.

        Raises:
            MissingHeadersError: a required header is absent.
            VerificationFailedError: no secret configured, bad/expired timestamp,
                or no matching signature.
            InvalidPayloadError: authentic body that is not an event envelope.
        """
        event_id, raw_timestamp, signature_header = self.extract_headers(headers)

        if not self._configured:
            logger.error("Webhook rejected: signing secret is not configured")
            raise VerificationFailedError("secret_not_configured")

        timestamp = self._check_timestamp(raw_timestamp)
        self._check_signature(event_id, timestamp, body, signature_header)

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError):
            raise InvalidPayloadError("body_not_json")

        if not isinstance(payload, dict):
            raise InvalidPayloadError("body_not_object")
        event_type = payload.get("type")
        data = payload.get("data")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidPayloadError("missing_type")
        if not isinstance(data, dict):
            raise InvalidPayloadError("missing_data")

        return VerifiedEvent(
            event_id=event_id,
            timestamp=timestamp,
            type=event_type,
            data=data,
            payload=payload,
        )
