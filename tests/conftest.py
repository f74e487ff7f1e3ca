"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async) and a session factory for the retry scan
- Signed identity-provider deliveries
- Test data factories
"""
# Settings are read at import time, so the environment must be ready before fintrack is imported
import os
os.environ.setdefault("CLERK_WEBHOOK_SECRET", "whsec_ZmludHJhY2stdGVzdC13ZWJob29rLXNpZ25pbmcta2V5")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_RETRY_WORKER_ENABLED", "false")
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "10000")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key-for-tests")

import json
import time
import uuid
from typing import AsyncGenerator, Callable

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from fintrack.core.config import settings
from fintrack.db.database import Base, get_db
from fintrack.db.models.user import User
from fintrack.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from fintrack.domain.services.signature_verifier import SignatureVerifier
from fintrack.domain.services.webhook_config import WebhookConfig
from fintrack.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# no custom event_loop fixture: pytest-asyncio handles it with
# asyncio_mode=auto and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (one session per retried event)"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook helpers
# ============================================================================

@pytest.fixture
def webhook_config() -> WebhookConfig:
    """Config matching the test settings, jitter included"""
    return WebhookConfig.from_settings(settings)


@pytest.fixture
def verifier(webhook_config: WebhookConfig) -> SignatureVerifier:
    return SignatureVerifier(
        webhook_config.signing_secret,
        webhook_config.signature_tolerance_seconds,
    )


@pytest.fixture
def signed_delivery(verifier: SignatureVerifier) -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Build ``(body, headers)`` for a correctly signed delivery"""

    def _build(
        event_type: str,
        data: dict,
        event_id: str | None = None,
        timestamp: int | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        event_id = event_id or f"msg_{uuid.uuid4().hex}"
        timestamp = timestamp if timestamp is not None else int(time.time())
        body = json.dumps({"type": event_type, "data": data, "object": "event"}).encode()
        headers = {
            "content-type": "application/json",
            "svix-id": event_id,
            "svix-timestamp": str(timestamp),
            "svix-signature": verifier.sign(event_id, timestamp, body),
        }
        return body, headers

    return _build


def _user_payload(
    subject_id: str = "user_2abc",
    email: str | None = "ada@example.com",
    first_name: str | None = "Ada",
    last_name: str | None = "Lovelace",
    **extra,
) -> dict:
    """Identity-provider user object as delivered in ``data``"""
    data = {
        "id": subject_id,
        "email_addresses": (
            [{"id": "idn_1", "email_address": email}] if email else []
        ),
        "primary_email_address_id": "idn_1" if email else None,
        "phone_numbers": [],
        "first_name": first_name,
        "last_name": last_name,
        "image_url": "https://img.example.com/ada.png",
        "username": None,
        "created_at": 1_700_000_000_000,
        "updated_at": 1_700_000_000_000,
        "last_sign_in_at": None,
    }
    data.update(extra)
    return data


@pytest.fixture
def user_payload() -> Callable[..., dict]:
    return _user_payload


@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for webhook log rows in any lifecycle state"""

    async def _create_event(
        event_id: str | None = None,
        event_type: str = "user.created",
        subject_id: str = "user_2abc",
        status: WebhookEventStatus = WebhookEventStatus.PENDING,
        attempt: int = 1,
        max_retries: int = 5,
        payload: dict | None = None,
        **fields,
    ) -> WebhookEvent:
        event_id = event_id or f"msg_{uuid.uuid4().hex}"
        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            subject_id=subject_id,
            status=status.value,
            attempt=attempt,
            max_retries=max_retries,
            payload=payload or {"type": event_type, "data": _user_payload(subject_id)},
            **fields,
        )
        db_session.add(event)
        await db_session.commit()
        return event

    return _create_event


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating local users"""

    async def _create_user(
        subject_id: str = "user_2abc",
        email: str = "ada@example.com",
        first_name: str = "Ada",
        last_name: str = "Lovelace",
        **fields,
    ) -> User:
        user = User(
            subject_id=subject_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            **fields,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _create_user
