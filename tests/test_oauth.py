"""
Tests for the Fanvue OAuth flow and lazy token refresh
"""
import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from fanreply.connectors.fanvue.oauth import (
    FanvueOAuth,
    TokenGrant,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from fanreply.core.errors import InvalidState, TokenExchangeFailed
from fanreply.db import repository
from fanreply.db.session import async_session

from conftest import FakeClock, make_creator


class TokenEndpoint:
    """Token endpoint double; records every form it receives."""

    def __init__(self, status: int = 200, body=None):
        self.status = status
        self.body = body if body is not None else {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.forms.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body)


def make_oauth(test_settings, endpoint=None, clock=None) -> FanvueOAuth:
    endpoint = endpoint or TokenEndpoint()
    return FanvueOAuth(
        settings=test_settings,
        transport=httpx.MockTransport(endpoint),
        clock=clock or FakeClock(),
    )


async def load_creator(creator_id):
    async with async_session() as session:
        return await repository.get_creator(session, creator_id)


# ============ PKCE Tests ============

def test_pkce_values():
    verifier = generate_code_verifier()
    assert 43 <= len(verifier) <= 128
    assert "=" not in verifier
    # RFC 7636 appendix B
    assert generate_code_challenge("dBjftJeZ4CVP-mJ92K27uhbUJU1p1r_wW1gFWFOEjXk") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    state = generate_state()
    assert len(state) == 32
    int(state, 16)


def test_start_flow_builds_authorization_url(test_settings):
    oauth = make_oauth(test_settings)
    req = oauth.start_flow(7)

    parsed = urlparse(req.authorization_url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == test_settings.fanvue_auth_url
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert params["client_id"] == "client-123"
    assert params["redirect_uri"] == test_settings.fanvue_redirect_uri
    assert params["response_type"] == "code"
    assert params["code_challenge_method"] == "S256"
    assert params["state"] == req.state

    pending = oauth.pkce_store.pop(req.state)
    assert pending.creator_id == 7
    assert params["code_challenge"] == generate_code_challenge(pending.code_verifier)


# ============ Code Exchange Tests ============

@pytest.mark.asyncio
async def test_complete_flow_succeeds_once(test_settings):
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)
    req = oauth.start_flow(7)

    grant = await oauth.complete_flow("auth-code", req.state)
    assert grant.access_token == "new-access"
    assert grant.refresh_token == "new-refresh"
    assert grant.creator_id == 7

    form = endpoint.forms[0]
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["client_secret"] == "secret-456"
    assert form["code_verifier"]

    with pytest.raises(InvalidState):
        await oauth.complete_flow("auth-code", req.state)
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_complete_flow_rejects_expired_state(test_settings):
    clock = FakeClock()
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint, clock)
    req = oauth.start_flow(7)
    clock.advance(test_settings.oauth_state_ttl_seconds + 1)

    with pytest.raises(InvalidState):
        await oauth.complete_flow("auth-code", req.state)
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_unknown_state_persists_nothing(test_settings):
    creator = await make_creator(fanvue_access_token=None, fanvue_refresh_token=None, fanvue_user_uuid=None)
    oauth = make_oauth(test_settings)
    oauth.start_flow(creator.id)

    with pytest.raises(InvalidState):
        await oauth.complete_flow("auth-code", "not-the-state")

    stored = await load_creator(creator.id)
    assert stored.fanvue_access_token is None


@pytest.mark.asyncio
async def test_token_exchange_failure_carries_status(test_settings):
    endpoint = TokenEndpoint(status=400, body='{"error":"invalid_grant"}')
    oauth = make_oauth(test_settings, endpoint)
    req = oauth.start_flow(7)

    with pytest.raises(TokenExchangeFailed) as excinfo:
        await oauth.complete_flow("bad-code", req.state)
    assert excinfo.value.status == 400
    assert "invalid_grant" in excinfo.value.body


@pytest.mark.asyncio
async def test_save_tokens_stores_identity(test_settings):
    creator = await make_creator(fanvue_access_token=None, fanvue_refresh_token=None, fanvue_user_uuid=None)
    oauth = make_oauth(test_settings)
    grant = TokenGrant(access_token="a", refresh_token="r", expires_in=3600)

    await oauth.save_tokens(creator.id, grant, remote_user_id="C9", remote_username="mia")

    stored = await load_creator(creator.id)
    assert stored.fanvue_access_token == "a"
    assert stored.fanvue_user_uuid == "C9"
    assert stored.is_connected
    info = await oauth.get_connection_info(creator.id)
    assert info["connected"] is True
    assert info["username"] == "mia"


# ============ Token Refresh Tests ============

@pytest.mark.asyncio
async def test_no_token_returns_none_without_network(test_settings):
    creator = await make_creator(fanvue_access_token=None, fanvue_refresh_token=None)
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) is None
    assert await oauth.get_valid_token(9999) is None
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_fresh_token_is_returned_as_is(test_settings, creator):
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) == "access-1"
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_token_without_expiry_is_returned_as_is(test_settings):
    creator = await make_creator(fanvue_token_expires_at=None)
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) == "access-1"
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_once(test_settings):
    creator = await make_creator(fanvue_token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=120))
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) == "new-access"
    assert len(endpoint.forms) == 1
    assert endpoint.forms[0]["grant_type"] == "refresh_token"
    assert endpoint.forms[0]["refresh_token"] == "refresh-1"

    stored = await load_creator(creator.id)
    assert stored.fanvue_access_token == "new-access"
    assert stored.fanvue_refresh_token == "new-refresh"

    # the refreshed token is far from expiry, so no second refresh
    assert await oauth.get_valid_token(creator.id) == "new-access"
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(test_settings):
    """Webhook and scheduler hitting an expiring token at once spend the refresh token once"""
    creator = await make_creator(fanvue_token_expires_at=datetime.now(timezone.utc) + timedelta(minutes=1))
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    tokens = await asyncio.gather(oauth.get_valid_token(creator.id), oauth.get_valid_token(creator.id))

    assert list(tokens) == ["new-access", "new-access"]
    assert [form["refresh_token"] for form in endpoint.forms] == ["refresh-1"]
    stored = await load_creator(creator.id)
    assert stored.fanvue_refresh_token == "new-refresh"


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_not_rotated(test_settings):
    creator = await make_creator(fanvue_token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    endpoint = TokenEndpoint(body={"access_token": "new-access", "expires_in": 3600})
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) == "new-access"
    stored = await load_creator(creator.id)
    assert stored.fanvue_refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_refresh_failure_returns_none(test_settings):
    creator = await make_creator(fanvue_token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=30))
    endpoint = TokenEndpoint(status=401, body='{"error":"invalid_grant"}')
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) is None
    stored = await load_creator(creator.id)
    assert stored.fanvue_access_token == "access-1"


@pytest.mark.asyncio
async def test_expiring_without_refresh_token_returns_none(test_settings):
    creator = await make_creator(
        fanvue_refresh_token=None,
        fanvue_token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    )
    endpoint = TokenEndpoint()
    oauth = make_oauth(test_settings, endpoint)

    assert await oauth.get_valid_token(creator.id) is None
    assert endpoint.forms == []


# ============ Disconnect Tests ============

@pytest.mark.asyncio
async def test_revoke_is_idempotent(test_settings, creator):
    oauth = make_oauth(test_settings)

    await oauth.revoke(creator.id)
    await oauth.revoke(creator.id)

    stored = await load_creator(creator.id)
    assert stored.fanvue_access_token is None
    assert stored.fanvue_user_uuid is None
    assert not stored.is_connected
    assert await oauth.get_valid_token(creator.id) is None
