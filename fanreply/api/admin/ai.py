# fanreply/api/admin/ai.py
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from fanreply.core.errors import GenerationFailed
from fanreply.db import repository
from fanreply.db.session import async_session
from fanreply.deps import get_ai_service, require_admin
from fanreply.services import analytics
from fanreply.services.ai_service import AIService

router = APIRouter(prefix="/api/ai", tags=["ai"], dependencies=[Depends(require_admin)])


class GenerateIn(BaseModel):
    fan_message: str
    creator_id: Optional[int] = None
    persona_id: Optional[str] = None
    creator_name: Optional[str] = None
    history: Optional[List[Dict[str, str]]] = None
    custom_rules: Optional[List[str]] = None
    log: bool = True


class FeedbackIn(BaseModel):
    was_used: bool = True
    was_edited: bool = False
    feedback: Optional[str] = None


class AIResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    creator_id: Optional[int]
    message_id: Optional[int]
    persona_id: Optional[str]
    source: str
    input_text: str
    output_text: str
    latency_ms: Optional[int]
    was_used: bool
    was_edited: bool
    created_at: Optional[datetime]


@router.post("/generate")
async def generate(payload: GenerateIn, ai: AIService = Depends(get_ai_service)):
    if not payload.fan_message.strip():
        raise HTTPException(status_code=400, detail="fan_message is required")
    if payload.creator_id is not None:
        async with async_session() as session:
            if not await repository.get_creator(session, payload.creator_id):
                raise HTTPException(status_code=404, detail="creator not found")
    try:
        result = await ai.generate(
            payload.fan_message,
            persona_id=payload.persona_id,
            creator_id=payload.creator_id,
            creator_name=payload.creator_name,
            history=payload.history,
            custom_rules=payload.custom_rules,
        )
    except GenerationFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    response_id = None
    if payload.log:
        async with async_session() as session:
            row = await analytics.log_ai_response(
                session,
                creator_id=payload.creator_id,
                persona_id=result.persona_used,
                source="manual",
                input_text=payload.fan_message,
                output_text=result.text,
                latency_ms=result.latency_ms,
            )
            await session.commit()
            response_id = row.id
    return {
        "response": result.text,
        "latency_ms": result.latency_ms,
        "persona_used": result.persona_used,
        "response_id": response_id,
    }


@router.put("/{response_id}/feedback", response_model=AIResponseOut)
async def feedback(response_id: int, payload: FeedbackIn):
    async with async_session() as session:
        row = await analytics.record_feedback(
            session, response_id, was_used=payload.was_used, was_edited=payload.was_edited, feedback=payload.feedback
        )
        if row is None:
            raise HTTPException(status_code=404, detail="response not found")
        await session.commit()
        return row


@router.get("/creator/{creator_id}/responses", response_model=List[AIResponseOut])
async def responses(creator_id: int, limit: int = 100):
    async with async_session() as session:
        return await analytics.list_responses(session, creator_id, limit=limit)


@router.get("/creator/{creator_id}/analytics")
async def creator_analytics(creator_id: int):
    async with async_session() as session:
        return await analytics.get_analytics(session, creator_id)
