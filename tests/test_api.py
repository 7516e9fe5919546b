"""
Tests for the HTTP surface: OAuth routes, admin routes, extension endpoints
"""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from httpx import AsyncClient

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.oauth import FanvueOAuth
from fanreply.core.config import settings
from fanreply.core.errors import GenerationFailed, NotConnected, PlatformApiError
from fanreply.db import repository
from fanreply.db.session import async_session
from fanreply.deps import get_ai_service, get_fanvue_client, get_oauth
from fanreply.main import app

from conftest import FakeAI, make_creator


def fanvue_stub(request: httpx.Request) -> httpx.Response:
    """Token endpoint and /self on one mock transport"""
    if request.url.path == "/oauth2/token":
        return httpx.Response(200, json={"access_token": "tok", "refresh_token": "ref", "expires_in": 3600})
    if request.url.path == "/self":
        return httpx.Response(200, json={"uuid": "C42", "handle": "mia_fv"})
    return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def oauth(test_settings) -> FanvueOAuth:
    oauth = FanvueOAuth(settings=test_settings, transport=httpx.MockTransport(fanvue_stub))
    fanvue = FanvueClient(oauth, settings=test_settings, transport=httpx.MockTransport(fanvue_stub))
    app.dependency_overrides[get_oauth] = lambda: oauth
    app.dependency_overrides[get_fanvue_client] = lambda: fanvue
    return oauth


# ============ OAuth Route Tests ============

@pytest.mark.asyncio
async def test_connect_flow_end_to_end(client: AsyncClient, oauth):
    creator = await make_creator(fanvue_access_token=None, fanvue_refresh_token=None, fanvue_user_uuid=None, fanvue_username=None)

    response = await client.post("/api/fanvue/auth/start", json={"creator_id": creator.id})
    assert response.status_code == 200
    state = response.json()["state"]
    query = parse_qs(urlparse(response.json()["auth_url"]).query)
    assert query["state"] == [state]

    callback = await client.get("/api/fanvue/oauth/callback", params={"code": "abc", "state": state})
    assert callback.status_code == 200
    assert "Fanvue Connected!" in callback.text

    status = await client.get(f"/api/fanvue/status/{creator.id}")
    assert status.json()["connected"] is True
    assert status.json()["user_uuid"] == "C42"
    assert status.json()["username"] == "mia_fv"

    replay = await client.get("/api/fanvue/oauth/callback", params={"code": "abc", "state": state})
    assert replay.status_code == 400


@pytest.mark.asyncio
async def test_callback_with_unknown_state(client: AsyncClient, oauth):
    creator = await make_creator(fanvue_access_token=None, fanvue_refresh_token=None, fanvue_user_uuid=None)

    response = await client.get("/api/fanvue/oauth/callback", params={"code": "abc", "state": "forged"})

    assert response.status_code == 400
    async with async_session() as session:
        stored = await repository.get_creator(session, creator.id)
    assert stored.fanvue_access_token is None


@pytest.mark.asyncio
async def test_callback_with_provider_error(client: AsyncClient, oauth):
    response = await client.get("/api/fanvue/oauth/callback", params={"error": "access_denied"})
    assert response.status_code == 400
    assert "access_denied" in response.text


@pytest.mark.asyncio
async def test_auth_start_unknown_creator(client: AsyncClient, oauth):
    response = await client.post("/api/fanvue/auth/start", json={"creator_id": 999})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_disconnect(client: AsyncClient, oauth, creator):
    response = await client.post("/api/fanvue/disconnect", json={"creator_id": creator.id})
    assert response.json()["ok"] is True

    status = await client.get(f"/api/fanvue/status/{creator.id}")
    assert status.json()["connected"] is False


# ============ Fanvue Proxy Route Tests ============

@pytest.mark.asyncio
async def test_proxy_errors_map_to_status_codes(client: AsyncClient, creator, fake_fanvue):
    app.dependency_overrides[get_fanvue_client] = lambda: fake_fanvue

    fake_fanvue.send_error = PlatformApiError(400, "Fan is not subscribed")
    response = await client.post(f"/api/fanvue/chats/{creator.id}/F1/message", json={"content": "hi"})
    assert response.status_code == 502
    assert response.json()["detail"] == "Fan is not subscribed"

    fake_fanvue.send_error = NotConnected(creator.id)
    response = await client.post(f"/api/fanvue/chats/{creator.id}/F1/message", json={"content": "hi"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_sync_upserts_chats(client: AsyncClient, creator, fake_fanvue):
    app.dependency_overrides[get_fanvue_client] = lambda: fake_fanvue
    fake_fanvue.chats[creator.id] = [
        {"user": {"uuid": "F1", "handle": "fan_one"}, "unreadCount": 2, "lastMessage": {"createdAt": "2024-01-01T00:00:00Z"}},
        {"user": {"uuid": "F2", "displayName": "Fan Two"}},
        {"lastMessage": {}},
    ]

    first = await client.post(f"/api/fanvue/sync/{creator.id}")
    second = await client.post(f"/api/fanvue/sync/{creator.id}")

    assert first.json() == {"ok": True, "synced_chats": 2}
    assert second.json()["synced_chats"] == 2
    chats = await client.get(f"/api/chats/creator/{creator.id}")
    assert len(chats.json()) == 2
    assert {c["remote_chat_id"]: c["unread_count"] for c in chats.json()} == {"F1": 2, "F2": 0}


# ============ Creator Admin Tests ============

@pytest.mark.asyncio
async def test_creator_crud(client: AsyncClient):
    response = await client.post("/api/creators/", json={"name": "Zoe", "persona_id": "playful"})
    assert response.status_code == 200
    created = response.json()
    assert created["is_connected"] is False
    assert created["auto_reply_enabled"] is False

    patched = await client.patch(
        f"/api/creators/{created['id']}", json={"auto_reply_enabled": True, "auto_reply_delay_seconds": 60}
    )
    assert patched.json()["auto_reply_enabled"] is True
    assert patched.json()["auto_reply_delay_seconds"] == 60
    assert patched.json()["persona_id"] == "playful"

    listed = await client.get("/api/creators/")
    assert [c["name"] for c in listed.json()] == ["Zoe"]
    assert (await client.get("/api/creators/999")).status_code == 404


@pytest.mark.asyncio
async def test_admin_key_is_enforced(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "s3cret")

    assert (await client.get("/api/creators/")).status_code == 401
    assert (await client.get("/api/creators/", headers={"X-API-Key": "wrong"})).status_code == 401
    assert (await client.get("/api/creators/", headers={"X-API-Key": "s3cret"})).status_code == 200
    # the OAuth callback is a browser redirect and stays open
    assert (await client.get("/api/fanvue/oauth/callback")).status_code == 400


# ============ Chat Admin Tests ============

@pytest.mark.asyncio
async def test_manual_reply_records_message_and_feedback(client: AsyncClient, creator, fake_fanvue):
    app.dependency_overrides[get_fanvue_client] = lambda: fake_fanvue
    async with async_session() as session:
        chat = await repository.upsert_chat(session, creator.id, "F1", fan_remote_id="F1", unread_count=3)
        row = await _log(session, creator.id)
        await session.commit()
        chat_id, response_id = chat.id, row.id

    response = await client.post(
        f"/api/chats/{chat_id}/reply", json={"text": "edited draft", "ai_response_id": response_id, "was_edited": True}
    )
    assert response.status_code == 200
    assert fake_fanvue.sent[0]["text"] == "edited draft"

    messages = await client.get(f"/api/chats/{chat_id}/messages")
    assert [(m["direction"], m["remote_message_id"]) for m in messages.json()] == [("outbound", "sent-1")]
    chats = await client.get(f"/api/chats/creator/{creator.id}")
    assert chats.json()[0]["unread_count"] == 0
    stats = await client.get(f"/api/ai/creator/{creator.id}/analytics")
    assert stats.json()["total_edited"] == 1


@pytest.mark.asyncio
async def test_manual_reply_surfaces_provider_message(client: AsyncClient, creator, fake_fanvue):
    app.dependency_overrides[get_fanvue_client] = lambda: fake_fanvue
    fake_fanvue.send_error = PlatformApiError(403, "Fan has blocked you")
    async with async_session() as session:
        chat = await repository.upsert_chat(session, creator.id, "F1")
        await session.commit()
        chat_id = chat.id

    response = await client.post(f"/api/chats/{chat_id}/reply", json={"text": "hello"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Fan has blocked you"
    assert (await client.get(f"/api/chats/{chat_id}/messages")).json() == []


async def _log(session, creator_id):
    from fanreply.services import analytics

    return await analytics.log_ai_response(
        session, creator_id=creator_id, input_text="hi", output_text="draft", latency_ms=100, persona_id="sweet"
    )


# ============ AI Route Tests ============

@pytest.mark.asyncio
async def test_generate_logs_and_feedback(client: AsyncClient, creator):
    ai = FakeAI(text="hello love")
    app.dependency_overrides[get_ai_service] = lambda: ai

    response = await client.post("/api/ai/generate", json={"fan_message": "hey", "creator_id": creator.id, "persona_id": "sweet"})
    body = response.json()
    assert body["response"] == "hello love"
    assert body["persona_used"] == "sweet"

    fb = await client.put(f"/api/ai/{body['response_id']}/feedback", json={"was_used": True, "feedback": "good"})
    assert fb.json()["was_used"] is True

    responses = await client.get(f"/api/ai/creator/{creator.id}/responses")
    assert [r["source"] for r in responses.json()] == ["manual"]
    stats = await client.get(f"/api/ai/creator/{creator.id}/analytics")
    assert stats.json() == {"total_generated": 1, "total_used": 1, "total_edited": 0, "avg_latency_ms": 42, "edit_rate": 0}


@pytest.mark.asyncio
async def test_generate_failure_is_502(client: AsyncClient):
    app.dependency_overrides[get_ai_service] = lambda: FakeAI(error=GenerationFailed("down"))
    response = await client.post("/api/ai/generate", json={"fan_message": "hey"})
    assert response.status_code == 502


@pytest.mark.asyncio
async def test_feedback_for_unknown_response(client: AsyncClient):
    response = await client.put("/api/ai/999/feedback", json={"was_used": True})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_generate_for_unknown_creator(client: AsyncClient):
    ai = FakeAI()
    app.dependency_overrides[get_ai_service] = lambda: ai
    response = await client.post("/api/ai/generate", json={"fan_message": "hey", "creator_id": 999})
    assert response.status_code == 404
    assert ai.calls == []


# ============ Extension Tests ============

@pytest.mark.asyncio
async def test_extension_sync_is_idempotent(client: AsyncClient, creator):
    payload = {
        "chatUrl": "https://onlyfans.com/my/chats/chat/123456/",
        "fanUsername": "u123456",
        "modelId": creator.id,
        "messages": [
            {"text": "hey gorgeous", "timestamp": "2024-01-01T10:00:00Z", "isFromCreator": False},
            {"text": "hi you", "timestamp": "2024-01-01T10:01:00Z", "isFromCreator": True},
        ],
    }

    first = await client.post("/api/extension/sync", json=payload)
    second = await client.post("/api/extension/sync", json=payload)

    assert first.json()["syncedMessages"] == 2
    assert first.json()["totalMessages"] == 2
    assert second.json()["syncedMessages"] == 0
    assert second.json()["chatId"] == first.json()["chatId"]

    messages = await client.get(f"/api/chats/{first.json()['chatId']}/messages")
    assert [m["direction"] for m in messages.json()] == ["inbound", "outbound"]
    chats = await client.get(f"/api/chats/creator/{creator.id}")
    assert chats.json()[0]["platform"] == "onlyfans"
    assert chats.json()[0]["remote_chat_id"] == "123456"


@pytest.mark.asyncio
async def test_extension_sync_same_fan_for_two_creators(client: AsyncClient, creator):
    """One fan writing the same text to two creators lands in both chats"""
    other = await make_creator(name="Zoe", fanvue_user_uuid="C2")
    payload = {
        "chatUrl": "https://onlyfans.com/my/chats/chat/195935586/",
        "fanUsername": "u195935586",
        "messages": [{"text": "hi", "timestamp": "2024-01-01T10:00:00Z", "isFromCreator": False}],
    }

    first = await client.post("/api/extension/sync", json={**payload, "modelId": creator.id})
    second = await client.post("/api/extension/sync", json={**payload, "modelId": other.id})

    assert first.json()["syncedMessages"] == 1
    assert second.json()["syncedMessages"] == 1
    assert second.json()["chatId"] != first.json()["chatId"]
    async with async_session() as session:
        assert await repository.count_messages(session, first.json()["chatId"]) == 1
        assert await repository.count_messages(session, second.json()["chatId"]) == 1


@pytest.mark.asyncio
async def test_extension_sync_unknown_creator(client: AsyncClient):
    payload = {"chatUrl": "https://x/chat/1", "fanUsername": "u1", "modelId": 999, "messages": []}
    response = await client.post("/api/extension/sync", json=payload)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_extension_generate_and_feedback(client: AsyncClient, creator):
    ai = FakeAI(text="aw thanks")
    app.dependency_overrides[get_ai_service] = lambda: ai

    response = await client.post(
        "/api/extension/generate", json={"fanMessage": "you're cute", "modelId": creator.id, "personaId": "playful"}
    )
    body = response.json()
    assert body["response"] == "aw thanks"
    assert body["personaUsed"] == "playful"
    assert body["generationTimeMs"] == 42

    fb = await client.post("/api/extension/feedback", json={"responseId": body["responseId"], "wasUsed": True})
    assert fb.json()["success"] is True
    responses = await client.get(f"/api/ai/creator/{creator.id}/responses")
    assert responses.json()[0]["source"] == "extension"
    assert responses.json()[0]["was_used"] is True


@pytest.mark.asyncio
async def test_extension_generate_unknown_creator(client: AsyncClient):
    ai = FakeAI()
    app.dependency_overrides[get_ai_service] = lambda: ai
    response = await client.post("/api/extension/generate", json={"fanMessage": "you're cute", "modelId": 999})
    assert response.status_code == 404
    assert ai.calls == []
    async with async_session() as session:
        assert await repository.count_ai_logs(session) == 0


# ============ Health Tests ============

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    body = response.json()
    assert body["status"] == "ok"
    assert body["auto_reply"]["running"] is False
    assert body["auto_reply"]["ticks_skipped"] == 0
