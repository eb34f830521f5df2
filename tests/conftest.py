"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from fingate.database import create_session_factory
from fingate.main import create_app
from fingate.models.base import Base
from fingate.models.user import User
from fingate.models.api_key import ApiKey, ApiUsageLog, RateLimitWindow  # noqa: F401
from fingate.models.webhook import Webhook, WebhookLog  # noqa: F401
from fingate.models.transaction import Transaction  # noqa: F401
from fingate.services.api_key_service import ApiKeyService
from fingate.services.jwt_service import JWTService
from fingate.tasks import drain


class FakeClock:
    """Controllable replacement for utcnow."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Async sleep stand-in that records delays instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class WebhookReceiver:
    """
    Subscriber endpoint behind httpx.MockTransport.

    Queue outcomes in ``outcomes``: an int status code, an exception to
    raise, or "hang" to never answer. Otherwise ``status_by_url`` is
    consulted, then ``default_status``. ``on_request`` is called with each
    request before it is answered.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.outcomes: list = []
        self.status_by_url: dict[str, int] = {}
        self.default_status = 200
        self.body = "ok"
        self.on_request = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.status_by_url.get(str(request.url), self.default_status)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(3600)
        return httpx.Response(outcome, text=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
async def engine(tmp_path):
    """On-disk SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fingate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await drain()
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


async def _create_user(session_factory, email: str) -> User:
    async with session_factory() as db:
        user = User(email=email, name=email.split("@")[0])
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


@pytest.fixture
async def user(session_factory) -> User:
    return await _create_user(session_factory, "owner@example.com")


@pytest.fixture
async def other_user(session_factory) -> User:
    return await _create_user(session_factory, "someone-else@example.com")


@pytest.fixture
def auth_headers(user: User) -> dict:
    """Owner JWT for the management routes."""
    token = JWTService().create_token(user.id, user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_api_key(session_factory, user):
    """Factory creating an API key for ``user``; returns (plaintext, record)."""

    async def factory(scopes=None, rate_limit=60, owner: User | None = None, **kwargs):
        async with session_factory() as db:
            result = await ApiKeyService(db).create_api_key(
                user_id=(owner or user).id,
                name="Test Key",
                scopes=scopes or ["read", "write"],
                rate_limit=rate_limit,
                **kwargs,
            )
        return result.key, result.api_key

    return factory


@pytest.fixture
def make_webhook(session_factory, user):
    """Factory persisting a webhook registration for ``user``."""

    async def factory(**overrides) -> Webhook:
        fields = {
            "user_id": user.id,
            "name": "Test Hook",
            "url": "https://hooks.example.com/fingate",
            "secret": "whsec_test_secret",
            "events": ["transaction.created"],
            "retry_count": 3,
            "timeout_seconds": 10,
            "is_active": True,
        }
        fields.update(overrides)
        async with session_factory() as db:
            webhook = Webhook(**fields)
            db.add(webhook)
            await db.commit()
            await db.refresh(webhook)
            return webhook

    return factory


@pytest.fixture
def app(session_factory, receiver):
    return create_app(session_factory=session_factory, webhook_transport=receiver.transport)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
