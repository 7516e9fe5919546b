# fanreply/connectors/fanvue/oauth.py
"""
Fanvue OAuth 2.0 (authorization code + PKCE) and per-creator token storage.

Flow:
    start_flow(creator_id)       -> authorization URL the creator opens
    complete_flow(code, state)   -> tokens, once, from the redirect callback
    get_valid_token(creator_id)  -> access token, refreshed lazily near expiry

Pending authorizations live in an in-process `ExpiringStore`; a restart in
the middle of a flow means the creator has to start again.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from fanreply.core.cache import Clock, ExpiringStore
from fanreply.core.config import Settings, settings as default_settings
from fanreply.core.errors import InvalidState, TokenExchangeFailed, TokenRefreshFailed
from fanreply.db import repository
from fanreply.db.session import async_session

logger = logging.getLogger("fanreply.fanvue.oauth")


def generate_code_verifier() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode()


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def generate_state() -> str:
    return secrets.token_hex(16)


@dataclass
class PendingAuthorization:
    code_verifier: str
    creator_id: int


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    token_type: Optional[str] = None
    scope: Optional[str] = None
    creator_id: Optional[int] = None

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=int(self.expires_in))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FanvueOAuth:
    def __init__(
        self,
        settings: Settings = default_settings,
        pkce_store: Optional[ExpiringStore[PendingAuthorization]] = None,
        session_factory=async_session,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = time.monotonic,
    ):
        self.settings = settings
        self.pkce_store = pkce_store or ExpiringStore(settings.oauth_state_ttl_seconds, clock=clock)
        self.session_factory = session_factory
        self._transport = transport
        self._refresh_locks: Dict[int, asyncio.Lock] = {}

    # --- authorization flow ---

    def start_flow(self, creator_id: int) -> AuthorizationRequest:
        state = generate_state()
        verifier = generate_code_verifier()
        self.pkce_store.put(state, PendingAuthorization(code_verifier=verifier, creator_id=creator_id))
        swept = self.pkce_store.sweep()
        if swept:
            logger.debug("Dropped %d expired PKCE entries", swept)

        params = {
            "client_id": self.settings.fanvue_client_id,
            "redirect_uri": self.settings.fanvue_redirect_uri,
            "response_type": "code",
            "scope": self.settings.fanvue_scopes,
            "state": state,
            "code_challenge": generate_code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        logger.info("Started Fanvue OAuth flow for creator=%s", creator_id)
        return AuthorizationRequest(
            authorization_url=f"{self.settings.fanvue_auth_url}?{urlencode(params)}",
            state=state,
        )

    async def complete_flow(self, code: str, state: str) -> TokenGrant:
        pending = self.pkce_store.pop(state)
        if pending is None:
            logger.warning("OAuth callback with unknown or expired state")
            raise InvalidState("Invalid or expired state parameter")

        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self.settings.fanvue_client_id,
                "client_secret": self.settings.fanvue_client_secret,
                "code": code,
                "redirect_uri": self.settings.fanvue_redirect_uri,
                "code_verifier": pending.code_verifier,
            },
            TokenExchangeFailed,
        )
        grant = _grant_from_response(data, fallback_refresh=None)
        grant.creator_id = pending.creator_id
        logger.info("Exchanged OAuth code for creator=%s", pending.creator_id)
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        data = await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self.settings.fanvue_client_id,
                "client_secret": self.settings.fanvue_client_secret,
                "refresh_token": refresh_token,
            },
            TokenRefreshFailed,
        )
        # providers may or may not rotate the refresh token
        return _grant_from_response(data, fallback_refresh=refresh_token)

    async def _token_request(self, form: Dict[str, str], error_cls) -> Dict[str, Any]:
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.settings.oauth_timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.settings.fanvue_token_url, headers=headers, content=urlencode(form))
        except httpx.HTTPError as exc:
            logger.error("Fanvue token endpoint unreachable (%s): %s", form["grant_type"], exc)
            raise error_cls(None, str(exc)) from exc

        if not resp.is_success:
            logger.error("Fanvue token endpoint error (%s): %s %s", form["grant_type"], resp.status_code, resp.text)
            raise error_cls(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as exc:
            raise error_cls(resp.status_code, resp.text) from exc
        if not data.get("access_token"):
            raise error_cls(resp.status_code, "response did not contain an access_token")
        return data

    # --- token storage ---

    async def save_tokens(
        self,
        creator_id: int,
        grant: TokenGrant,
        remote_user_id: Optional[str] = None,
        remote_username: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            await repository.store_creator_tokens(
                session,
                creator_id,
                grant.access_token,
                grant.refresh_token,
                grant.expires_at(),
                remote_user_id=remote_user_id,
                remote_username=remote_username,
            )
            await session.commit()

    async def _load_token(self, creator_id: int) -> Optional[Tuple[str, Optional[str], Optional[datetime]]]:
        async with self.session_factory() as session:
            creator = await repository.get_creator(session, creator_id)
            if creator is None or not creator.fanvue_access_token:
                return None
            return (
                creator.fanvue_access_token,
                creator.fanvue_refresh_token,
                _as_utc(creator.fanvue_token_expires_at),
            )

    def _is_expiring(self, expires_at: Optional[datetime]) -> bool:
        if expires_at is None:
            return False
        buffer = timedelta(seconds=self.settings.token_refresh_buffer_seconds)
        return expires_at - buffer <= datetime.now(timezone.utc)

    async def get_valid_token(self, creator_id: int) -> Optional[str]:
        """Return a usable access token, or None when the creator is effectively disconnected.

        Refreshes are serialized per creator: the webhook path and the
        scheduler may both find the token expiring, but only one of them
        spends the refresh token.
        """
        record = await self._load_token(creator_id)
        if record is None:
            return None
        if not self._is_expiring(record[2]):
            return record[0]

        lock = self._refresh_locks.setdefault(creator_id, asyncio.Lock())
        async with lock:
            # whoever held the lock may already have stored a fresh token
            record = await self._load_token(creator_id)
            if record is None:
                return None
            access_token, refresh_token, expires_at = record
            if not self._is_expiring(expires_at):
                return access_token

            if not refresh_token:
                logger.warning("Fanvue token for creator=%s expiring and no refresh token stored", creator_id)
                return None

            try:
                logger.info("Refreshing Fanvue token for creator=%s", creator_id)
                grant = await self.refresh(refresh_token)
            except TokenRefreshFailed as exc:
                logger.error("Failed to refresh Fanvue token for creator=%s: %s", creator_id, exc)
                return None

            await self.save_tokens(creator_id, grant)
            return grant.access_token

    async def revoke(self, creator_id: int) -> None:
        async with self.session_factory() as session:
            await repository.clear_creator_tokens(session, creator_id)
            await session.commit()
        logger.info("Disconnected Fanvue for creator=%s", creator_id)

    async def get_connection_info(self, creator_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            creator = await repository.get_creator(session, creator_id)
            if creator is None:
                return None
            return {
                "connected": creator.is_connected,
                "username": creator.fanvue_username,
                "user_uuid": creator.fanvue_user_uuid,
                "token_expires_at": _as_utc(creator.fanvue_token_expires_at),
            }


def _grant_from_response(data: Dict[str, Any], fallback_refresh: Optional[str]) -> TokenGrant:
    return TokenGrant(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or fallback_refresh,
        expires_in=data.get("expires_in"),
        token_type=data.get("token_type"),
        scope=data.get("scope"),
    )
