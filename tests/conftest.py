"""
Shared fixtures: in-memory SQLite database, test settings and fakes for the
Fanvue API and the AI backend.
"""
import os

# must be set before anything from fanreply is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["AUTO_REPLY_RUNNER"] = "off"
os.environ.pop("FANVUE_WEBHOOK_SECRET", None)
os.environ.pop("ADMIN_API_KEY", None)

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fanreply.connectors.fanvue.client import Page
from fanreply.core.cache import BoundedSet, CooldownTracker
from fanreply.core.config import Settings
from fanreply.db import repository
from fanreply.db.session import async_session, drop_db, engine, init_db
from fanreply.services.ai_service import GenerationResult
from fanreply.services.auto_reply import AutoReplier, AutoReplyState

PERSONAS_DIR = Path(__file__).resolve().parent.parent / "personas"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAI:
    """Stands in for AIService; records every generate() call."""

    def __init__(self, text: str = "hey you 😊", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, fan_message: str, **kwargs) -> GenerationResult:
        self.calls.append({"fan_message": fan_message, **kwargs})
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.text, latency_ms=42, persona_used=kwargs.get("persona_id") or "default")


class FakeFanvue:
    """Stands in for FanvueClient with canned chats/messages per fan."""

    def __init__(self):
        self.chats: Dict[int, List[Dict[str, Any]]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.sent: List[Dict[str, Any]] = []
        self.send_error: Optional[Exception] = None
        self.list_errors: Dict[int, Exception] = {}
        self.list_chats_calls = 0

    async def list_chats(self, creator_id, limit=20, cursor=None, filter=None) -> Page:
        self.list_chats_calls += 1
        if creator_id in self.list_errors:
            raise self.list_errors[creator_id]
        return Page(items=list(self.chats.get(creator_id, [])))

    async def list_messages(self, creator_id, fan_uuid, limit=50, cursor=None, before=None) -> Page:
        return Page(items=list(self.messages.get(fan_uuid, []))[:limit])

    async def send_message(self, creator_id, fan_uuid, text, price=None, media_ids=None) -> Dict[str, Any]:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({"creator_id": creator_id, "fan_uuid": fan_uuid, "text": text})
        return {"uuid": f"sent-{len(self.sent)}", "text": text}


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        fanvue_client_id="client-123",
        fanvue_client_secret="secret-456",
        fanvue_redirect_uri="https://crm.example.com/api/fanvue/oauth/callback",
        fanvue_auth_url="https://auth.fanvue.test/oauth2/auth",
        fanvue_token_url="https://auth.fanvue.test/oauth2/token",
        fanvue_api_base_url="https://api.fanvue.test",
        ai_webhook_url="https://ai.example.test/webhook/chat",
        personas_dir=str(PERSONAS_DIR),
        fanvue_webhook_secret=None,
        auto_reply_default_delay_seconds=30,
    )


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Fresh schema for every test"""
    await init_db()
    yield
    await drop_db()
    # the pooled connection belongs to this test's event loop
    await engine.dispose()


async def make_creator(**overrides):
    fields = {
        "name": "Mia",
        "persona_id": "sweet",
        "auto_reply_enabled": False,
        "fanvue_access_token": "access-1",
        "fanvue_refresh_token": "refresh-1",
        "fanvue_token_expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
        "fanvue_user_uuid": "C1",
        "fanvue_username": "mia",
    }
    fields.update(overrides)
    async with async_session() as session:
        creator = await repository.create_creator(session, **fields)
        await session.commit()
        return creator


@pytest_asyncio.fixture
async def creator():
    return await make_creator()


@pytest_asyncio.fixture
async def auto_creator():
    return await make_creator(auto_reply_enabled=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def fake_fanvue() -> FakeFanvue:
    return FakeFanvue()


@pytest.fixture
def state(clock) -> AutoReplyState:
    return AutoReplyState(processed=BoundedSet(100), cooldowns=CooldownTracker(maxsize=100, clock=clock))


@pytest.fixture
def replier(fake_ai, fake_fanvue, state, test_settings) -> AutoReplier:
    return AutoReplier(fake_ai, fake_fanvue, state, settings=test_settings)


@pytest_asyncio.fixture
async def client():
    """Async test client against the ASGI app (lifespan not run, so no worker)"""
    from fanreply.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
