# fanreply/api/extension.py
"""
Endpoints used by the browser extension that runs on the first-party
platform's chat pages. The extension scrapes the page; only its JSON payloads
matter here.
"""
import hashlib
import logging
import re
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from fanreply.connectors.fanvue.payloads import parse_timestamp
from fanreply.core.errors import GenerationFailed
from fanreply.core.logging import preview
from fanreply.db import repository
from fanreply.db.session import async_session
from fanreply.deps import get_ai_service, require_admin
from fanreply.services import analytics
from fanreply.services.ai_service import AIService

router = APIRouter(prefix="/api/extension", tags=["extension"], dependencies=[Depends(require_admin)])
logger = logging.getLogger("fanreply.api.extension")

PLATFORM = "onlyfans"
_CHAT_URL_ID = re.compile(r"/chat/(\d+)")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExtensionGenerateIn(_CamelModel):
    fan_message: str = Field(alias="fanMessage")
    fan_name: Optional[str] = Field(default=None, alias="fanName")
    creator_id: Optional[int] = Field(default=None, alias="modelId")
    creator_name: Optional[str] = Field(default=None, alias="modelName")
    persona_id: Optional[str] = Field(default=None, alias="personaId")
    chat_history: Optional[List[Dict[str, str]]] = Field(default=None, alias="chatHistory")


class ScrapedMessage(_CamelModel):
    text: str = ""
    timestamp: Optional[str | int | float] = None
    is_from_creator: bool = Field(default=False, alias="isFromCreator")
    has_media: bool = Field(default=False, alias="hasMedia")


class ExtensionSyncIn(_CamelModel):
    chat_url: str = Field(alias="chatUrl")
    fan_username: str = Field(alias="fanUsername")
    fan_display_name: Optional[str] = Field(default=None, alias="fanDisplayName")
    creator_id: int = Field(alias="modelId")
    messages: List[ScrapedMessage]


class ExtensionFeedbackIn(_CamelModel):
    response_id: int = Field(alias="responseId")
    was_used: bool = Field(default=False, alias="wasUsed")
    was_edited: bool = Field(default=False, alias="wasEdited")
    feedback: Optional[str] = None


def scraped_message_id(creator_id: int, fan_id: str, message: ScrapedMessage) -> str:
    """The page exposes no message ids; timestamp + text prefix is stable across re-syncs."""
    # fan ids are platform-wide, the same fan can write to several creators
    raw = f"{creator_id}|{fan_id}|{message.timestamp or ''}|{message.text[:50]}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@router.post("/generate")
async def extension_generate(payload: ExtensionGenerateIn, ai: AIService = Depends(get_ai_service)):
    if not payload.fan_message.strip():
        raise HTTPException(status_code=400, detail="fanMessage is required")
    if payload.creator_id is not None:
        async with async_session() as session:
            if not await repository.get_creator(session, payload.creator_id):
                raise HTTPException(status_code=404, detail="creator not found")
    logger.info("[Extension] Generate request: %r persona=%s", preview(payload.fan_message), payload.persona_id or "default")
    try:
        result = await ai.generate(
            payload.fan_message,
            persona_id=payload.persona_id,
            creator_id=payload.creator_id,
            creator_name=payload.creator_name,
            history=payload.chat_history,
        )
    except GenerationFailed as exc:
        logger.error("[Extension] Generate error: %s", exc)
        raise HTTPException(status_code=502, detail="Failed to generate AI response") from exc

    async with async_session() as session:
        row = await analytics.log_ai_response(
            session,
            creator_id=payload.creator_id,
            persona_id=result.persona_used,
            source="extension",
            input_text=payload.fan_message,
            output_text=result.text,
            latency_ms=result.latency_ms,
        )
        await session.commit()
    return {
        "response": result.text,
        "generationTimeMs": result.latency_ms,
        "personaUsed": result.persona_used,
        "responseId": row.id,
    }


@router.post("/feedback")
async def extension_feedback(payload: ExtensionFeedbackIn):
    async with async_session() as session:
        row = await analytics.record_feedback(
            session, payload.response_id, was_used=payload.was_used, was_edited=payload.was_edited, feedback=payload.feedback
        )
        if row is None:
            raise HTTPException(status_code=404, detail="response not found")
        await session.commit()
    return {"success": True, "message": "Feedback recorded"}


@router.post("/sync")
async def extension_sync(payload: ExtensionSyncIn):
    match = _CHAT_URL_ID.search(payload.chat_url)
    fan_id = match.group(1) if match else payload.fan_username
    logger.info("[Extension] Sync: %d messages from %s (%s)", len(payload.messages), payload.fan_username, fan_id)

    async with async_session() as session:
        if not await repository.get_creator(session, payload.creator_id):
            raise HTTPException(status_code=404, detail="creator not found")
        chat = await repository.upsert_chat(
            session,
            payload.creator_id,
            fan_id,
            platform=PLATFORM,
            fan_remote_id=fan_id,
            fan_username=payload.fan_username,
            fan_display_name=payload.fan_display_name or payload.fan_username,
        )
        new_messages = 0
        latest = None
        for msg in payload.messages:
            sent_at = parse_timestamp(msg.timestamp)
            _, created = await repository.insert_message_if_absent(
                session,
                chat.id,
                scraped_message_id(payload.creator_id, fan_id, msg),
                "outbound" if msg.is_from_creator else "inbound",
                msg.text,
                platform=PLATFORM,
                has_media=msg.has_media,
                sent_at=sent_at,
            )
            if created:
                new_messages += 1
            if sent_at and (latest is None or sent_at > latest):
                latest = sent_at
        if latest is not None:
            await repository.bump_chat_activity(session, chat.id, latest, increment_unread=False)
        await session.commit()
        chat_id = chat.id

    return {"chatId": chat_id, "syncedMessages": new_messages, "totalMessages": len(payload.messages)}


@router.get("/personas")
async def list_personas(ai: AIService = Depends(get_ai_service)):
    personas = []
    for persona_id in ai.personas.available():
        persona = ai.personas.load(persona_id)
        if persona is not None:
            personas.append(
                {
                    "id": persona.persona_id,
                    "name": persona.name,
                    "archetype": persona.archetype,
                    "description": persona.description,
                    "traits": persona.personality_traits,
                }
            )
    return {"personas": personas}
