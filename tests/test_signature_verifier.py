"""
Tests for Svix signature verification
"""
import base64
import hashlib
import hmac
import json

import pytest

from fintrack.core.exceptions import (
    ErrorCode,
    InvalidPayloadError,
    MissingHeadersError,
    VerificationFailedError,
)
from fintrack.domain.services.signature_verifier import SignatureVerifier

_KEY = b"unit-test-signing-key"
_SECRET = "whsec_" + base64.b64encode(_KEY).decode()
_NOW = 1_700_000_000


def _verifier(secret: str = _SECRET, now: float = _NOW) -> SignatureVerifier:
    return SignatureVerifier(secret, tolerance_seconds=300, clock=lambda: now)


def _body(event_type: str = "user.created", data: dict | None = None) -> bytes:
    return json.dumps({"type": event_type, "data": data or {"id": "user_1"}}).encode()


def _headers(verifier: SignatureVerifier, body: bytes, event_id: str = "msg_1", ts: int = _NOW) -> dict:
    return {
        "svix-id": event_id,
        "svix-timestamp": str(ts),
        "svix-signature": verifier.sign(event_id, ts, body),
    }


class TestSign:

    @pytest.mark.unit
    def test_signature_matches_svix_scheme(self):
        """Signed content is ``id.timestamp.body`` under the base64-decoded key"""
        body = _body()
        expected = base64.b64encode(
            hmac.new(_KEY, b"msg_1.1700000000." + body, hashlib.sha256).digest()
        ).decode()

        assert _verifier().sign("msg_1", _NOW, body) == f"v1,{expected}"

    @pytest.mark.unit
    def test_secret_without_prefix_used_verbatim(self):
        body = _body()
        expected = base64.b64encode(
            hmac.new(b"plain-secret", b"msg_1.1700000000." + body, hashlib.sha256).digest()
        ).decode()

        assert _verifier("plain-secret").sign("msg_1", _NOW, body) == f"v1,{expected}"

    @pytest.mark.unit
    def test_published_svix_vector(self):
        """Known values from the Svix manual-verification guide"""
        verifier = _verifier("whsec_MfKQ9r8GKYqrTwjUPD8ILPZIo2LaLaSw", now=1614265330)
        body = b'{"test": 2432232314}'
        signature = "v1,g0hM9SsE+OTPJTGt/tmIKtSyZlE3uFJELVlNIOLJ1OE="

        assert verifier.sign("msg_p5jXN8AQM9LWM0D4loKWxJek", 1614265330, body) == signature

        # authentic, but not a {type, data} envelope
        with pytest.raises(InvalidPayloadError):
            verifier.verify(body, {
                "svix-id": "msg_p5jXN8AQM9LWM0D4loKWxJek",
                "svix-timestamp": "1614265330",
                "svix-signature": signature,
            })


class TestVerify:

    @pytest.mark.unit
    def test_valid_delivery_is_decoded(self):
        verifier = _verifier()
        body = _body(data={"id": "user_1", "first_name": "Ada"})

        event = verifier.verify(body, _headers(verifier, body))

        assert event.event_id == "msg_1"
        assert event.timestamp == _NOW
        assert event.type == "user.created"
        assert event.data["first_name"] == "Ada"
        assert event.payload["data"]["id"] == "user_1"

    @pytest.mark.unit
    def test_headers_are_case_insensitive(self):
        verifier = _verifier()
        body = _body()
        headers = {k.upper(): v for k, v in _headers(verifier, body).items()}

        assert verifier.verify(body, headers).event_id == "msg_1"

    @pytest.mark.unit
    @pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp", "svix-signature"])
    def test_missing_header_rejected(self, missing):
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body)
        del headers[missing]

        with pytest.raises(MissingHeadersError) as exc_info:
            verifier.verify(body, headers)

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["missing"] == [missing]

    @pytest.mark.unit
    def test_tampered_body_rejected(self):
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body)

        with pytest.raises(VerificationFailedError) as exc_info:
            verifier.verify(body.replace(b"user_1", b"user_2"), headers)

        assert exc_info.value.error_code == ErrorCode.WEBHOOK_VERIFICATION_FAILED
        assert exc_info.value.details["reason"] == "signature_mismatch"

    @pytest.mark.unit
    def test_wrong_secret_rejected(self):
        body = _body()
        headers = _headers(_verifier("whsec_" + base64.b64encode(b"other").decode()), body)

        with pytest.raises(VerificationFailedError):
            _verifier().verify(body, headers)

    @pytest.mark.unit
    def test_any_matching_signature_accepted(self):
        """During secret rotation the header carries several signatures"""
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body)
        headers["svix-signature"] = f"v1,bm90LXRoZS1yaWdodC1vbmU= {headers['svix-signature']}"

        assert verifier.verify(body, headers).type == "user.created"

    @pytest.mark.unit
    def test_unknown_signature_version_ignored(self):
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body)
        headers["svix-signature"] = headers["svix-signature"].replace("v1,", "v2,")

        with pytest.raises(VerificationFailedError):
            verifier.verify(body, headers)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "offset, reason",
        [(-301, "timestamp_too_old"), (301, "timestamp_too_new")],
    )
    def test_timestamp_outside_tolerance_rejected(self, offset, reason):
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body, ts=_NOW + offset)

        with pytest.raises(VerificationFailedError) as exc_info:
            verifier.verify(body, headers)

        assert exc_info.value.details["reason"] == reason

    @pytest.mark.unit
    def test_timestamp_at_tolerance_edge_accepted(self):
        verifier = _verifier()
        body = _body()

        assert verifier.verify(body, _headers(verifier, body, ts=_NOW - 300)).type == "user.created"

    @pytest.mark.unit
    def test_non_numeric_timestamp_rejected(self):
        verifier = _verifier()
        body = _body()
        headers = _headers(verifier, body)
        headers["svix-timestamp"] = "yesterday"

        with pytest.raises(VerificationFailedError) as exc_info:
            verifier.verify(body, headers)

        assert exc_info.value.details["reason"] == "invalid_timestamp"

    @pytest.mark.unit
    def test_unconfigured_secret_rejects_everything(self):
        verifier = _verifier(secret="")
        body = _body()
        headers = {"svix-id": "msg_1", "svix-timestamp": str(_NOW), "svix-signature": "v1,abc"}

        with pytest.raises(VerificationFailedError) as exc_info:
            verifier.verify(body, headers)

        assert exc_info.value.details["reason"] == "secret_not_configured"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body, reason",
        [
            (b"not json", "body_not_json"),
            (b"[1, 2]", "body_not_object"),
            (b'{"data": {"id": "user_1"}}', "missing_type"),
            (b'{"type": "user.created", "data": "x"}', "missing_data"),
        ],
    )
    def test_authentic_but_malformed_body_rejected(self, body, reason):
        verifier = _verifier()

        with pytest.raises(InvalidPayloadError) as exc_info:
            verifier.verify(body, _headers(verifier, body))

        assert exc_info.value.details["reason"] == reason
