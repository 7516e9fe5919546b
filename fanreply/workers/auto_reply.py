# fanreply/workers/auto_reply.py
"""
Polling auto-reply worker.

Every interval a sweep ("tick") looks at the unread Fanvue chats of each
creator with auto-reply on and answers the ones whose latest message came from
the fan. Only one tick runs at a time: a tick that comes due while the
previous one is still going is dropped, not queued.

The webhook may be answering the same conversation concurrently; the shared
`AutoReplyState` (processed ids + per-chat cooldown) keeps that to one reply.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fanreply.connectors.fanvue.payloads import (
    FAN_DISPLAY_NAME_PATHS,
    FAN_USERNAME_PATHS,
    MESSAGE_ID_PATHS,
    MESSAGE_TEXT_PATHS,
    SENDER_UUID_PATHS,
    as_str,
    fan_uuid_of_chat,
    first_present,
)
from fanreply.core.config import Settings, settings as default_settings
from fanreply.db import repository
from fanreply.db.models import Creator
from fanreply.db.session import async_session
from fanreply.services.auto_reply import AutoReplier

logger = logging.getLogger("fanreply.worker.auto_reply")


class AutoReplyScheduler:
    def __init__(self, replier: AutoReplier, settings: Settings = default_settings, session_factory=async_session):
        self.replier = replier
        self.client = replier.client
        self.state = replier.state
        self.settings = settings
        self.session_factory = session_factory

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()
        self.ticks_started = 0
        self.ticks_completed = 0
        self.ticks_skipped = 0

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._running

    # --- lifecycle ---

    def start(self, interval_seconds: Optional[float] = None) -> None:
        if self.is_running:
            logger.info("[AutoReply] Worker already running")
            return
        interval = interval_seconds or self.settings.auto_reply_interval_seconds
        logger.info("[AutoReply] Starting worker with %ss interval", interval)
        self._loop_task = asyncio.create_task(self._loop(interval), name="auto-reply-loop")

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        tasks = list(self._tick_tasks)
        for task in tasks:
            task.cancel()
        # the engine is disposed right after shutdown; let ticks unwind first
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[AutoReply] Worker stopped")

    async def _loop(self, interval: float) -> None:
        # first tick fires immediately; ticks are not awaited so a slow one
        # cannot delay the schedule, it just causes the next to be skipped
        while True:
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            await asyncio.sleep(interval)

    # --- sweep ---

    async def tick(self) -> int:
        if self._running:
            self.ticks_skipped += 1
            logger.info("[AutoReply] Previous tick still running, skipping")
            return 0

        self._running = True
        self.ticks_started += 1
        total = 0
        try:
            async with self.session_factory() as session:
                creators = await repository.list_auto_reply_creators(session)
            if creators:
                logger.debug("[AutoReply] Processing %d creators with auto-reply enabled", len(creators))
            for creator in creators:
                total += await self.process_creator(creator)
            if total:
                logger.info("[AutoReply] Sent %d auto-replies this tick", total)
        except Exception:
            logger.exception("[AutoReply] Tick failed")
        finally:
            self._running = False
            self.ticks_completed += 1
        return total

    async def process_creator(self, creator: Creator) -> int:
        try:
            page = await self.client.list_chats(creator.id, limit=self.settings.auto_reply_chat_page_size, filter="unread")
        except Exception as exc:
            logger.error("[AutoReply] Could not list chats for creator=%s: %s", creator.id, exc)
            return 0

        if page.items:
            logger.info("[AutoReply] Creator %s: %d unread chats", creator.id, len(page.items))

        replies = 0
        for chat in page.items:
            try:
                if await self.process_chat(creator, chat):
                    replies += 1
            except Exception as exc:
                logger.error("[AutoReply] Error processing chat %s for creator=%s: %s", fan_uuid_of_chat(chat), creator.id, exc)
        return replies

    async def process_chat(self, creator: Creator, chat: Dict[str, Any]) -> bool:
        fan_uuid = fan_uuid_of_chat(chat)
        if not fan_uuid:
            logger.debug("[AutoReply] Skipping chat without fan uuid")
            return False

        last_preview = chat.get("lastMessage") or {}
        if str(last_preview.get("type") or "").upper() == "BROADCAST":
            logger.debug("[AutoReply] Skipping %s - broadcast message", fan_uuid)
            return False

        if self.replier.is_cooling(creator, fan_uuid):
            logger.debug("[AutoReply] Skipping %s - replied too recently", fan_uuid)
            return False

        page = await self.client.list_messages(creator.id, fan_uuid, limit=5)
        if not page.items:
            return False
        latest = page.items[0]  # newest first

        if str(latest.get("type") or "").upper().startswith("AUTOMATED"):
            logger.debug("[AutoReply] Skipping %s - automated message (%s)", fan_uuid, latest.get("type"))
            return False

        sender = as_str(first_present(latest, SENDER_UUID_PATHS))
        if latest.get("isFromCreator") is True or (sender and sender == creator.fanvue_user_uuid):
            logger.debug("[AutoReply] Skipping %s - creator already replied", fan_uuid)
            return False

        message_id = as_str(first_present(latest, MESSAGE_ID_PATHS))
        if not message_id:
            return False
        if self.state.is_processed(creator.id, message_id):
            logger.debug("[AutoReply] Skipping %s - message %s already processed", fan_uuid, message_id)
            return False

        text = first_present(latest, MESSAGE_TEXT_PATHS) or ""
        if not str(text).strip():
            logger.debug("[AutoReply] Skipping %s - empty message", fan_uuid)
            return False

        sent = await self.replier.reply(
            creator,
            fan_uuid=fan_uuid,
            fan_message=str(text),
            remote_message_id=message_id,
            source="scheduler",
            fan_username=first_present(chat, FAN_USERNAME_PATHS),
            fan_display_name=first_present(chat, FAN_DISPLAY_NAME_PATHS),
            received_at=latest.get("createdAt") or latest.get("sentAt"),
        )
        return sent is not None
