# fanreply/db/repository.py
"""
Query helpers shared by the webhook, the scheduler and the HTTP routes.

Callers own the session and decide when to commit. The two writes that can
race between the webhook and the scheduler (chat find-or-create and message
insert) are expressed as INSERT ... ON CONFLICT so a replay or a concurrent
writer never produces a duplicate row.
"""
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fanreply.db.models import AIResponseLog, Chat, Creator, Message, utcnow


def _insert(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"upserts are not supported on {dialect}")
    return insert(model)


# --- creators ---

async def get_creator(session: AsyncSession, creator_id: int) -> Optional[Creator]:
    return await session.get(Creator, creator_id)


async def find_creator_by_remote_uuid(session: AsyncSession, remote_uuid: str) -> Optional[Creator]:
    q = await session.execute(select(Creator).where(Creator.fanvue_user_uuid == remote_uuid))
    return q.scalars().first()


async def list_creators(session: AsyncSession) -> Sequence[Creator]:
    q = await session.execute(select(Creator).order_by(Creator.id))
    return q.scalars().all()


async def list_auto_reply_creators(session: AsyncSession) -> Sequence[Creator]:
    q = await session.execute(
        select(Creator).where(
            Creator.auto_reply_enabled.is_(True),
            Creator.fanvue_access_token.is_not(None),
            Creator.fanvue_user_uuid.is_not(None),
        ).order_by(Creator.id)
    )
    return q.scalars().all()


async def create_creator(session: AsyncSession, **fields) -> Creator:
    creator = Creator(**fields)
    session.add(creator)
    await session.flush()
    return creator


async def store_creator_tokens(
    session: AsyncSession,
    creator_id: int,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[datetime],
    remote_user_id: Optional[str] = None,
    remote_username: Optional[str] = None,
) -> None:
    values = {
        "fanvue_access_token": access_token,
        "fanvue_refresh_token": refresh_token,
        "fanvue_token_expires_at": expires_at,
        "updated_at": utcnow(),
    }
    # identity fields are only overwritten when known
    if remote_user_id is not None:
        values["fanvue_user_uuid"] = remote_user_id
    if remote_username is not None:
        values["fanvue_username"] = remote_username
    await session.execute(update(Creator).where(Creator.id == creator_id).values(**values))


async def clear_creator_tokens(session: AsyncSession, creator_id: int) -> None:
    await session.execute(
        update(Creator)
        .where(Creator.id == creator_id)
        .values(
            fanvue_access_token=None,
            fanvue_refresh_token=None,
            fanvue_token_expires_at=None,
            fanvue_user_uuid=None,
            fanvue_username=None,
            updated_at=utcnow(),
        )
    )


# --- chats ---

async def upsert_chat(
    session: AsyncSession,
    creator_id: int,
    remote_chat_id: str,
    *,
    platform: str = "fanvue",
    fan_remote_id: Optional[str] = None,
    fan_username: Optional[str] = None,
    fan_display_name: Optional[str] = None,
    last_message_at: Optional[datetime] = None,
    unread_count: Optional[int] = None,
) -> Chat:
    now = utcnow()
    stmt = _insert(session, Chat).values(
        creator_id=creator_id,
        platform=platform,
        remote_chat_id=remote_chat_id,
        fan_remote_id=fan_remote_id,
        fan_username=fan_username,
        fan_display_name=fan_display_name,
        last_message_at=last_message_at,
        unread_count=unread_count or 0,
        created_at=now,
        updated_at=now,
    )
    cols = Chat.__table__.c
    updates = {"updated_at": stmt.excluded.updated_at}
    for name in ("fan_remote_id", "fan_username", "fan_display_name", "last_message_at"):
        updates[name] = sa.func.coalesce(getattr(stmt.excluded, name), cols[name])
    if unread_count is not None:
        updates["unread_count"] = stmt.excluded.unread_count
    stmt = stmt.on_conflict_do_update(
        index_elements=["creator_id", "remote_chat_id"], set_=updates
    ).returning(Chat.id)
    chat_id = (await session.execute(stmt)).scalar_one()
    return await session.get(Chat, chat_id, populate_existing=True)


async def bump_chat_activity(
    session: AsyncSession, chat_id: int, last_message_at: Optional[datetime], increment_unread: bool = True
) -> None:
    values = {"updated_at": utcnow()}
    if last_message_at is not None:
        values["last_message_at"] = last_message_at
    if increment_unread:
        values["unread_count"] = Chat.unread_count + 1
    await session.execute(update(Chat).where(Chat.id == chat_id).values(**values))


async def list_chats(session: AsyncSession, creator_id: int, limit: int = 50, offset: int = 0) -> Sequence[Chat]:
    q = await session.execute(
        select(Chat)
        .where(Chat.creator_id == creator_id)
        .order_by(Chat.last_message_at.desc().nulls_last(), Chat.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return q.scalars().all()


# --- messages ---

async def find_message_by_remote_id(session: AsyncSession, platform: str, remote_message_id: str) -> Optional[Message]:
    q = await session.execute(
        select(Message).where(Message.platform == platform, Message.remote_message_id == remote_message_id)
    )
    return q.scalars().first()


async def insert_message_if_absent(
    session: AsyncSession,
    chat_id: int,
    remote_message_id: str,
    direction: str,
    content: Optional[str],
    *,
    platform: str = "fanvue",
    has_media: bool = False,
    sent_by_ai: bool = False,
    sent_at: Optional[datetime] = None,
) -> Tuple[Optional[Message], bool]:
    """Insert a message unless its remote id was already stored.

    Returns `(message, created)`; on a replay `created` is False and the
    stored row is returned untouched.
    """
    now = utcnow()
    stmt = (
        _insert(session, Message)
        .values(
            chat_id=chat_id,
            platform=platform,
            remote_message_id=remote_message_id,
            direction=direction,
            content=content,
            has_media=has_media,
            sent_by_ai=sent_by_ai,
            sent_at=sent_at or now,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["platform", "remote_message_id"])
        .returning(Message.id)
    )
    new_id = (await session.execute(stmt)).scalar_one_or_none()
    if new_id is None:
        return await find_message_by_remote_id(session, platform, remote_message_id), False
    return await session.get(Message, new_id), True


async def list_messages(session: AsyncSession, chat_id: int, limit: int = 100) -> List[Message]:
    q = await session.execute(
        select(Message).where(Message.chat_id == chat_id).order_by(Message.sent_at.desc(), Message.id.desc()).limit(limit)
    )
    return list(reversed(q.scalars().all()))


async def count_messages(session: AsyncSession, chat_id: Optional[int] = None) -> int:
    stmt = select(sa.func.count(Message.id))
    if chat_id is not None:
        stmt = stmt.where(Message.chat_id == chat_id)
    return (await session.execute(stmt)).scalar_one()


async def count_ai_logs(session: AsyncSession, creator_id: Optional[int] = None) -> int:
    stmt = select(sa.func.count(AIResponseLog.id))
    if creator_id is not None:
        stmt = stmt.where(AIResponseLog.creator_id == creator_id)
    return (await session.execute(stmt)).scalar_one()
