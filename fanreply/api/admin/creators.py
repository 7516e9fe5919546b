# fanreply/api/admin/creators.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from fanreply.db import repository
from fanreply.db.session import async_session
from fanreply.deps import require_admin

router = APIRouter(prefix="/api/creators", tags=["admin"], dependencies=[Depends(require_admin)])


class CreatorIn(BaseModel):
    name: str
    of_username: Optional[str] = None
    persona_id: Optional[str] = None
    auto_reply_enabled: bool = False
    auto_reply_delay_seconds: Optional[int] = Field(default=None, ge=0)


class CreatorSettingsIn(BaseModel):
    persona_id: Optional[str] = None
    auto_reply_enabled: Optional[bool] = None
    auto_reply_delay_seconds: Optional[int] = Field(default=None, ge=0)


class CreatorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    of_username: Optional[str]
    persona_id: Optional[str]
    auto_reply_enabled: bool
    auto_reply_delay_seconds: Optional[int]
    fanvue_username: Optional[str]
    fanvue_user_uuid: Optional[str]
    fanvue_token_expires_at: Optional[datetime]
    is_connected: bool


@router.post("/", response_model=CreatorOut)
async def create_creator(payload: CreatorIn):
    async with async_session() as session:
        creator = await repository.create_creator(session, **payload.model_dump())
        await session.commit()
        return creator


@router.get("/", response_model=List[CreatorOut])
async def list_creators():
    async with async_session() as session:
        return await repository.list_creators(session)


@router.get("/{creator_id}", response_model=CreatorOut)
async def get_creator(creator_id: int):
    async with async_session() as session:
        creator = await repository.get_creator(session, creator_id)
        if not creator:
            raise HTTPException(status_code=404, detail="creator not found")
        return creator


@router.patch("/{creator_id}", response_model=CreatorOut)
async def update_creator_settings(creator_id: int, payload: CreatorSettingsIn):
    async with async_session() as session:
        creator = await repository.get_creator(session, creator_id)
        if not creator:
            raise HTTPException(status_code=404, detail="creator not found")
        for name, value in payload.model_dump(exclude_unset=True).items():
            setattr(creator, name, value)
        await session.commit()
        return creator
