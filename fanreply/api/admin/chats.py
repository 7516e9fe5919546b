# fanreply/api/admin/chats.py
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy import update

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.payloads import MESSAGE_ID_PATHS, as_str, first_present
from fanreply.core.errors import NotConnected, PlatformApiError
from fanreply.db import repository
from fanreply.db.models import Chat
from fanreply.db.session import async_session
from fanreply.deps import get_fanvue_client, require_admin
from fanreply.services import analytics

router = APIRouter(prefix="/api/chats", tags=["admin"], dependencies=[Depends(require_admin)])


class ChatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    creator_id: int
    platform: str
    remote_chat_id: Optional[str]
    fan_username: Optional[str]
    fan_display_name: Optional[str]
    last_message_at: Optional[datetime]
    unread_count: int


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    remote_message_id: str
    direction: str
    content: Optional[str]
    has_media: bool
    sent_by_ai: bool
    sent_at: Optional[datetime]


class ReplyIn(BaseModel):
    text: str
    ai_response_id: Optional[int] = None  # set when the text started as an AI draft
    was_edited: bool = False


@router.get("/creator/{creator_id}", response_model=List[ChatOut])
async def list_chats(creator_id: int, limit: int = 50, offset: int = 0):
    async with async_session() as session:
        return await repository.list_chats(session, creator_id, limit=limit, offset=offset)


@router.get("/{chat_id}/messages", response_model=List[MessageOut])
async def list_messages(chat_id: int, limit: int = 100):
    async with async_session() as session:
        if not await session.get(Chat, chat_id):
            raise HTTPException(status_code=404, detail="chat not found")
        return await repository.list_messages(session, chat_id, limit=limit)


@router.post("/{chat_id}/reply")
async def reply_to_chat(chat_id: int, body: ReplyIn, client: FanvueClient = Depends(get_fanvue_client)):
    """Send a message typed (or approved) by a human chatter."""
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="text is required")
    async with async_session() as session:
        chat = await session.get(Chat, chat_id)
        if not chat:
            raise HTTPException(status_code=404, detail="chat not found")
        if chat.platform != "fanvue" or not chat.remote_chat_id:
            raise HTTPException(status_code=400, detail="chat cannot be replied to from the dashboard")
        creator_id, fan_uuid = chat.creator_id, chat.remote_chat_id

    try:
        sent = await client.send_message(creator_id, fan_uuid, body.text)
    except NotConnected as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PlatformApiError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc

    remote_id = as_str(first_present(sent, MESSAGE_ID_PATHS)) if isinstance(sent, dict) else None
    async with async_session() as session:
        message, _ = await repository.insert_message_if_absent(
            session, chat_id, remote_id or f"manual:{uuid.uuid4().hex}", "outbound", body.text
        )
        await session.execute(update(Chat).where(Chat.id == chat_id).values(unread_count=0))
        if body.ai_response_id is not None:
            await analytics.record_feedback(session, body.ai_response_id, was_used=True, was_edited=body.was_edited)
        await session.commit()
    return {"ok": True, "message_id": message.id if message else None}
