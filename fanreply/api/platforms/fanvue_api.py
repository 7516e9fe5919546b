# fanreply/api/platforms/fanvue_api.py
import html
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.oauth import FanvueOAuth
from fanreply.connectors.fanvue.sync import sync_all_chats
from fanreply.core.errors import FanreplyError, InvalidState, NotConnected, PlatformApiError
from fanreply.db import repository
from fanreply.db.session import async_session
from fanreply.deps import get_fanvue_client, get_oauth, require_admin

router = APIRouter(prefix="/api/fanvue", tags=["fanvue"])
protected = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger("fanreply.api.fanvue")

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>body {{ font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; }}
.card {{ padding: 40px; border-radius: 16px; text-align: center; box-shadow: 0 10px 40px rgba(0,0,0,0.2); }}</style>
</head>
<body><div class="card"><h1>{title}</h1><p>{body}</p></div></body>
</html>"""


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(_PAGE.format(title=html.escape(title), body=html.escape(body)), status_code=status_code)


def _raise_http(exc: FanreplyError):
    if isinstance(exc, NotConnected):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, PlatformApiError):
        # the provider's message is actionable ("fan unsubscribed" etc.), pass it on
        raise HTTPException(status_code=502, detail=exc.message) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


# --- OAuth callback (no auth: browser redirect from Fanvue) ---

@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    oauth: FanvueOAuth = Depends(get_oauth),
    client: FanvueClient = Depends(get_fanvue_client),
):
    if error:
        logger.error("Fanvue OAuth error: %s", error)
        return _page("Connection Failed", f"Fanvue reported: {error}", status_code=400)
    if not code or not state:
        return _page("Connection Failed", "Missing code or state.", status_code=400)

    try:
        grant = await oauth.complete_flow(code, state)
    except InvalidState:
        return _page("Connection Failed", "This link has expired. Please start the connection again.", status_code=400)
    except FanreplyError as exc:
        logger.error("Fanvue OAuth callback error: %s", exc)
        return _page("Connection Failed", "Please try again or contact support.", status_code=502)

    await oauth.save_tokens(grant.creator_id, grant)

    try:
        profile = await client.get_profile(grant.creator_id)
        await oauth.save_tokens(
            grant.creator_id,
            grant,
            remote_user_id=profile.get("uuid"),
            remote_username=profile.get("username") or profile.get("handle"),
        )
    except FanreplyError as exc:
        logger.error("Failed to fetch Fanvue profile for creator=%s: %s", grant.creator_id, exc)

    return _page("Fanvue Connected!", f"Your account is now linked. Creator ID: {grant.creator_id}")


# --- OAuth management ---

class StartAuthIn(BaseModel):
    creator_id: int


@protected.post("/auth/start")
async def start_auth(payload: StartAuthIn, oauth: FanvueOAuth = Depends(get_oauth)):
    async with async_session() as session:
        if not await repository.get_creator(session, payload.creator_id):
            raise HTTPException(status_code=404, detail="creator not found")
    req = oauth.start_flow(payload.creator_id)
    return {"auth_url": req.authorization_url, "state": req.state}


@protected.get("/auth/redirect/{creator_id}")
async def start_auth_redirect(creator_id: int, oauth: FanvueOAuth = Depends(get_oauth)):
    return RedirectResponse(oauth.start_flow(creator_id).authorization_url)


class DisconnectIn(BaseModel):
    creator_id: int


@protected.post("/disconnect")
async def disconnect(payload: DisconnectIn, oauth: FanvueOAuth = Depends(get_oauth)):
    await oauth.revoke(payload.creator_id)
    return {"ok": True, "detail": "Fanvue disconnected"}


@protected.get("/status/{creator_id}")
async def connection_status(creator_id: int, oauth: FanvueOAuth = Depends(get_oauth)):
    info = await oauth.get_connection_info(creator_id)
    if info is None:
        raise HTTPException(status_code=404, detail="creator not found")
    return info


# --- chats / messages ---

@protected.get("/chats/{creator_id}")
async def get_chats(
    creator_id: int,
    limit: int = 20,
    cursor: Optional[str] = None,
    filter: Optional[Literal["all", "unread", "priority"]] = None,
    client: FanvueClient = Depends(get_fanvue_client),
):
    try:
        page = await client.list_chats(creator_id, limit=limit, cursor=cursor, filter=filter)
    except FanreplyError as exc:
        _raise_http(exc)
    return {"data": page.items, "pagination": {"nextCursor": page.next_cursor}}


@protected.get("/chats/{creator_id}/{fan_uuid}/messages")
async def get_chat_messages(
    creator_id: int,
    fan_uuid: str,
    limit: int = 50,
    cursor: Optional[str] = None,
    client: FanvueClient = Depends(get_fanvue_client),
):
    try:
        page = await client.list_messages(creator_id, fan_uuid, limit=limit, cursor=cursor)
    except FanreplyError as exc:
        _raise_http(exc)
    return {"data": page.items, "pagination": {"nextCursor": page.next_cursor}}


class SendMessageIn(BaseModel):
    content: str
    price: Optional[float] = None
    media_ids: Optional[List[str]] = None


@protected.post("/chats/{creator_id}/{fan_uuid}/message")
async def send_message(
    creator_id: int, fan_uuid: str, payload: SendMessageIn, client: FanvueClient = Depends(get_fanvue_client)
):
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="content is required")
    try:
        message = await client.send_message(creator_id, fan_uuid, payload.content, price=payload.price, media_ids=payload.media_ids)
    except FanreplyError as exc:
        _raise_http(exc)
    return {"ok": True, "data": message}


class MassMessageIn(BaseModel):
    content: str
    price: Optional[float] = None
    media_ids: Optional[List[str]] = None
    target_user_uuids: Optional[List[str]] = None
    filters: Optional[Dict[str, Any]] = None


@protected.post("/mass-message/{creator_id}")
async def mass_message(creator_id: int, payload: MassMessageIn, client: FanvueClient = Depends(get_fanvue_client)):
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="content is required")
    try:
        result = await client.send_mass_message(
            creator_id,
            payload.content,
            price=payload.price,
            media_ids=payload.media_ids,
            target_user_uuids=payload.target_user_uuids,
            filters=payload.filters,
        )
    except FanreplyError as exc:
        _raise_http(exc)
    return {"ok": True, "data": result}


# --- subscribers ---

@protected.get("/subscribers/{creator_id}")
async def get_subscribers(
    creator_id: int,
    limit: int = 20,
    cursor: Optional[str] = None,
    status: Optional[Literal["active", "expired", "all"]] = None,
    sort_by: Optional[Literal["recent", "totalSpent", "alphabetical"]] = None,
    client: FanvueClient = Depends(get_fanvue_client),
):
    try:
        page = await client.list_subscribers(creator_id, limit=limit, cursor=cursor, status=status, sort_by=sort_by)
    except FanreplyError as exc:
        _raise_http(exc)
    return {"data": page.items, "pagination": {"nextCursor": page.next_cursor}}


# --- sync ---

@protected.post("/sync/{creator_id}")
async def sync(creator_id: int, client: FanvueClient = Depends(get_fanvue_client)):
    try:
        synced = await sync_all_chats(client, creator_id)
    except FanreplyError as exc:
        _raise_http(exc)
    return {"ok": True, "synced_chats": synced}


router.include_router(protected)
