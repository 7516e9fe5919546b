# fanreply/services/auto_reply.py
"""
Generate-and-send for automatic replies.

Both the webhook and the polling scheduler end up here. They share one
`AutoReplyState`, so a fan message seen by both paths is answered once: the
message key is claimed before generation starts (the event loop makes the
check-and-add atomic) and released again if generation or sending fails,
letting the next sweep retry it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.payloads import parse_timestamp
from fanreply.core.cache import BoundedSet, CooldownTracker
from fanreply.core.config import Settings, settings as default_settings
from fanreply.core.logging import preview
from fanreply.db import repository
from fanreply.db.models import Creator
from fanreply.db.session import async_session
from fanreply.services import analytics
from fanreply.services.ai_service import AIService, GenerationResult

logger = logging.getLogger("fanreply.auto_reply")


@dataclass
class AutoReplyState:
    processed: BoundedSet
    cooldowns: CooldownTracker

    @classmethod
    def create(cls, settings: Settings = default_settings) -> "AutoReplyState":
        size = settings.auto_reply_processed_cache_size
        return cls(processed=BoundedSet(size), cooldowns=CooldownTracker(maxsize=size))

    @staticmethod
    def message_key(creator_id: int, remote_message_id: str) -> str:
        return f"{creator_id}:{remote_message_id}"

    @staticmethod
    def chat_key(creator_id: int, fan_uuid: str) -> str:
        return f"{creator_id}:{fan_uuid}"

    def is_processed(self, creator_id: int, remote_message_id: str) -> bool:
        return self.message_key(creator_id, remote_message_id) in self.processed

    def claim(self, creator_id: int, remote_message_id: str) -> bool:
        key = self.message_key(creator_id, remote_message_id)
        if key in self.processed:
            return False
        self.processed.add(key)
        return True

    def release(self, creator_id: int, remote_message_id: str) -> None:
        self.processed.discard(self.message_key(creator_id, remote_message_id))


class AutoReplier:
    def __init__(
        self,
        ai_service: AIService,
        client: FanvueClient,
        state: AutoReplyState,
        settings: Settings = default_settings,
        session_factory=async_session,
    ):
        self.ai_service = ai_service
        self.client = client
        self.state = state
        self.settings = settings
        self.session_factory = session_factory

    def delay_for(self, creator: Creator) -> int:
        if creator.auto_reply_delay_seconds is not None:
            return creator.auto_reply_delay_seconds
        return self.settings.auto_reply_default_delay_seconds

    def is_cooling(self, creator: Creator, fan_uuid: str) -> bool:
        return self.state.cooldowns.is_cooling(self.state.chat_key(creator.id, fan_uuid), self.delay_for(creator))

    def persona_for(self, creator: Creator) -> str:
        return creator.persona_id or self.settings.default_persona_id

    async def reply(
        self,
        creator: Creator,
        *,
        fan_uuid: str,
        fan_message: str,
        remote_message_id: str,
        source: str,
        fan_username: Optional[str] = None,
        fan_display_name: Optional[str] = None,
        received_at: Any = None,
    ) -> Optional[str]:
        """Answer one fan message. Returns the sent text, or None if another path already claimed it.

        GenerationFailed / PlatformApiError / NotConnected propagate; the
        caller decides whether they matter.
        """
        if not self.state.claim(creator.id, remote_message_id):
            logger.info("Message %s for creator=%s already handled, skipping", remote_message_id, creator.id)
            return None

        sent_ok = False
        try:
            result = await self.ai_service.generate(
                fan_message,
                persona_id=self.persona_for(creator),
                creator_id=creator.id,
                creator_name=creator.fanvue_username or creator.name,
            )
            await self.client.send_message(creator.id, fan_uuid, result.text)
            sent_ok = True
        finally:
            if not sent_ok:
                self.state.release(creator.id, remote_message_id)

        self.state.cooldowns.touch(self.state.chat_key(creator.id, fan_uuid))
        logger.info("Auto-replied (%s) creator=%s fan=%s: %r", source, creator.id, fan_uuid, preview(result.text))

        await self._record(
            creator,
            fan_uuid=fan_uuid,
            fan_message=fan_message,
            remote_message_id=remote_message_id,
            result=result,
            source=source,
            fan_username=fan_username,
            fan_display_name=fan_display_name,
            received_at=received_at,
        )
        return result.text

    async def _record(
        self,
        creator: Creator,
        *,
        fan_uuid: str,
        fan_message: str,
        remote_message_id: str,
        result: GenerationResult,
        source: str,
        fan_username: Optional[str],
        fan_display_name: Optional[str],
        received_at: Any,
    ) -> None:
        async with self.session_factory() as session:
            chat = await repository.upsert_chat(
                session,
                creator.id,
                fan_uuid,
                fan_remote_id=fan_uuid,
                fan_username=fan_username,
                fan_display_name=fan_display_name,
            )
            inbound, _ = await repository.insert_message_if_absent(
                session,
                chat.id,
                remote_message_id,
                "inbound",
                fan_message,
                sent_at=parse_timestamp(received_at),
            )
            # the outbound row arrives with the message.sent event
            await analytics.log_ai_response(
                session,
                creator_id=creator.id,
                message_id=inbound.id if inbound else None,
                persona_id=result.persona_used,
                source=source,
                input_text=fan_message,
                output_text=result.text,
                latency_ms=result.latency_ms,
                was_used=True,
            )
            await session.commit()
