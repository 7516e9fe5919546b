# fanreply/connectors/fanvue/sync.py
import logging
from typing import Any, Dict, Optional

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.payloads import (
    CHAT_ID_PATHS,
    FAN_DISPLAY_NAME_PATHS,
    FAN_USERNAME_PATHS,
    as_str,
    fan_uuid_of_chat,
    first_present,
    parse_timestamp,
)
from fanreply.db import repository
from fanreply.db.session import async_session

logger = logging.getLogger("fanreply.fanvue.sync")


async def sync_chat_to_db(session, creator_id: int, chat: Dict[str, Any]) -> Optional[int]:
    # Fanvue keys conversations by the fan's uuid; fall back to the chat's own id
    fan_uuid = fan_uuid_of_chat(chat)
    remote_chat_id = fan_uuid or as_str(first_present(chat, CHAT_ID_PATHS))
    if not remote_chat_id:
        return None
    last = chat.get("lastMessage") or {}
    row = await repository.upsert_chat(
        session,
        creator_id,
        remote_chat_id,
        fan_remote_id=fan_uuid,
        fan_username=first_present(chat, FAN_USERNAME_PATHS),
        fan_display_name=first_present(chat, FAN_DISPLAY_NAME_PATHS),
        last_message_at=parse_timestamp(last.get("createdAt")),
        unread_count=int(chat.get("unreadCount") or 0),
    )
    return row.id


async def sync_all_chats(client: FanvueClient, creator_id: int, session_factory=async_session, page_size: int = 50) -> int:
    """Walk every page of the creator's Fanvue chats and upsert them locally."""
    synced = 0
    cursor = None
    async with session_factory() as session:
        while True:
            page = await client.list_chats(creator_id, limit=page_size, cursor=cursor)
            for chat in page.items:
                if await sync_chat_to_db(session, creator_id, chat) is not None:
                    synced += 1
            await session.commit()
            cursor = page.next_cursor
            if not cursor:
                break
    logger.info("Synced %d Fanvue chats for creator=%s", synced, creator_id)
    return synced
