"""
Tests for the webhook operator API: health, logs, manual retry, fallback user
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from fintrack.core.config import settings
from fintrack.db.models.webhook_event import WebhookEventStatus

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-api-key-for-tests"}


class TestAdminAuth:

    @pytest.mark.unit
    @pytest.mark.parametrize("method, path", [
        ("get", "/api/webhooks/health"),
        ("get", "/api/webhooks/logs"),
        ("post", "/api/webhooks/retry/msg_1"),
        ("post", "/api/webhooks/create-fallback"),
    ])
    async def test_missing_key_returns_401(self, test_client, method, path):
        response = await getattr(test_client, method)(path)

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key_returns_403(self, test_client):
        response = await test_client.get(
            "/api/webhooks/health", headers={"X-Admin-API-Key": "guess"}
        )

        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unconfigured_key_locks_endpoints(self, test_client):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.get("/api/webhooks/health", headers=ADMIN_HEADERS)

        assert response.status_code == 403


class TestWebhookHealth:

    @pytest.mark.unit
    async def test_empty_log_is_healthy(self, test_client):
        response = await test_client.get("/api/webhooks/health", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["healthy"] is True
        assert data["stats"] == {"success": 0, "failure": 0, "retrying": 0, "pending": 0}
        assert data["recentFailures"] == []

    @pytest.mark.unit
    async def test_counts_and_recent_failures(self, test_client, event_factory):
        await event_factory(event_id="ok", status=WebhookEventStatus.SUCCESS)
        await event_factory(event_id="bad", status=WebhookEventStatus.FAILURE, error="gave up")
        await event_factory(
            event_id="again", status=WebhookEventStatus.RETRYING, error="db down",
            next_retry_at=datetime.now(timezone.utc) + timedelta(seconds=30),
        )

        data = (await test_client.get("/api/webhooks/health", headers=ADMIN_HEADERS)).json()

        assert data["healthy"] is True
        assert data["stats"]["success"] == 1
        assert data["stats"]["failure"] == 1
        assert data["stats"]["retrying"] == 1
        recent = {event["eventId"]: event for event in data["recentFailures"]}
        assert set(recent) == {"bad", "again"}
        assert recent["bad"]["error"] == "gave up"
        assert "payload" not in recent["bad"]

    @pytest.mark.unit
    async def test_unhealthy_at_failure_threshold(self, test_client, event_factory):
        for i in range(settings.WEBHOOK_HEALTH_FAILURE_THRESHOLD):
            await event_factory(event_id=f"bad_{i}", status=WebhookEventStatus.FAILURE)

        data = (await test_client.get("/api/webhooks/health", headers=ADMIN_HEADERS)).json()

        assert data["healthy"] is False
        assert data["stats"]["failure"] == settings.WEBHOOK_HEALTH_FAILURE_THRESHOLD


class TestWebhookLogs:

    @pytest.mark.unit
    async def test_paginates_newest_first(self, test_client, event_factory):
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for i in range(5):
            await event_factory(event_id=f"msg_{i}", created_at=base + timedelta(minutes=i))

        response = await test_client.get(
            "/api/webhooks/logs", params={"page": 2, "limit": 2}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert [log["eventId"] for log in data["logs"]] == ["msg_2", "msg_1"]
        assert data["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}
        assert all("payload" not in log for log in data["logs"])

    @pytest.mark.unit
    async def test_filters(self, test_client, event_factory):
        await event_factory(event_id="a", event_type="user.created", subject_id="user_a",
                            status=WebhookEventStatus.FAILURE)
        await event_factory(event_id="b", event_type="user.updated", subject_id="user_a",
                            status=WebhookEventStatus.SUCCESS)
        await event_factory(event_id="c", event_type="user.created", subject_id="user_b",
                            status=WebhookEventStatus.FAILURE)

        async def ids(**params) -> set[str]:
            response = await test_client.get(
                "/api/webhooks/logs", params=params, headers=ADMIN_HEADERS
            )
            return {log["eventId"] for log in response.json()["logs"]}

        assert await ids(status="failure") == {"a", "c"}
        assert await ids(eventType="user.updated") == {"b"}
        assert await ids(subjectId="user_a") == {"a", "b"}
        assert await ids(status="failure", subjectId="user_b") == {"c"}

    @pytest.mark.unit
    @pytest.mark.parametrize("params", [
        {"page": 0},
        {"limit": 0},
        {"limit": 101},
        {"status": "exploded"},
    ])
    async def test_invalid_query_rejected(self, test_client, params):
        response = await test_client.get(
            "/api/webhooks/logs", params=params, headers=ADMIN_HEADERS
        )

        assert response.status_code == 422

    @pytest.mark.unit
    async def test_empty_log(self, test_client):
        data = (await test_client.get("/api/webhooks/logs", headers=ADMIN_HEADERS)).json()

        assert data["logs"] == []
        assert data["pagination"] == {"page": 1, "limit": 20, "total": 0, "pages": 0}


class TestManualRetry:

    @pytest.mark.unit
    async def test_unknown_event_returns_404(self, test_client):
        response = await test_client.post("/api/webhooks/retry/msg_missing", headers=ADMIN_HEADERS)

        assert response.status_code == 404

    @pytest.mark.unit
    async def test_processed_event_returns_400(self, test_client, event_factory):
        await event_factory(event_id="msg_1", status=WebhookEventStatus.SUCCESS)

        response = await test_client.post("/api/webhooks/retry/msg_1", headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2005"

    @pytest.mark.unit
    async def test_failed_event_recovers(self, test_client, event_factory, session_factory):
        from fintrack.domain.services.user_sync_service import UserSyncService

        await event_factory(event_id="msg_1", status=WebhookEventStatus.FAILURE,
                            attempt=5, max_retries=5, error="db down")

        response = await test_client.post("/api/webhooks/retry/msg_1", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["eventId"] == "msg_1"
        assert data["status"] == "success"
        assert data["error"] is None
        async with session_factory() as db:
            assert await UserSyncService(db).get_user("user_2abc") is not None

    @pytest.mark.unit
    async def test_permanent_failure_reported(self, test_client, event_factory, user_payload):
        await event_factory(
            event_id="msg_1", status=WebhookEventStatus.FAILURE, error="No email address found",
            payload={"type": "user.created", "data": user_payload(email=None)},
        )

        response = await test_client.post("/api/webhooks/retry/msg_1", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failure"
        assert data["error"] == "No email address found"
        assert data["nextRetry"] is None


class TestCreateFallback:

    @pytest.mark.unit
    async def test_creates_then_returns_existing(self, test_client):
        body = {"subjectId": "user_2abc", "email": "Ada@Example.com", "firstName": "Ada"}

        first = await test_client.post(
            "/api/webhooks/create-fallback", json=body, headers=ADMIN_HEADERS
        )
        second = await test_client.post(
            "/api/webhooks/create-fallback", json={**body, "firstName": "Changed"},
            headers=ADMIN_HEADERS,
        )

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["user"]["email"] == "ada@example.com"
        assert first.json()["user"]["isOnboarded"] is False
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["user"]["firstName"] == "Ada"
        assert second.json()["user"]["id"] == first.json()["user"]["id"]

    @pytest.mark.unit
    async def test_later_webhook_does_not_duplicate(
        self, test_client, signed_delivery, user_payload
    ):
        await test_client.post(
            "/api/webhooks/create-fallback",
            json={"subjectId": "user_2abc", "email": "ada@example.com"},
            headers=ADMIN_HEADERS,
        )
        body, headers = signed_delivery("user.created", user_payload())

        response = await test_client.post("/api/webhooks", content=body, headers=headers)
        user = await test_client.get("/api/users/user_2abc")

        assert response.json()["status"] == "success"
        assert user.status_code == 200
        assert user.json()["email"] == "ada@example.com"

    @pytest.mark.unit
    async def test_username_held_by_other_user_returns_409(self, test_client, user_factory):
        await user_factory(subject_id="user_other", email="other@example.com", username="ada")

        response = await test_client.post(
            "/api/webhooks/create-fallback",
            json={"subjectId": "user_2abc", "email": "ada@example.com", "username": "ada"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ERR_4002"
        assert error["details"]["subject_id"] == "user_2abc"
        missing = await test_client.get("/api/users/user_2abc")
        assert missing.status_code == 404

    @pytest.mark.unit
    @pytest.mark.parametrize("body", [
        {"email": "ada@example.com"},
        {"subjectId": "user_2abc"},
        {"subjectId": "user_2abc", "email": "not-an-email"},
    ])
    async def test_invalid_body_rejected(self, test_client, body):
        response = await test_client.post(
            "/api/webhooks/create-fallback", json=body, headers=ADMIN_HEADERS
        )

        assert response.status_code == 422
