# fanreply/connectors/fanvue/events.py
"""
Fanvue webhook event handling.

    verify signature -> resolve creator -> dispatch by event type
      -> idempotent persist -> optional auto-reply

Fanvue delivers at least once, so every write is keyed on Fanvue's own ids
and a redelivered event changes nothing. Auto-reply failures are logged here
and never reach the HTTP response: once the inbound message is stored the
event counts as handled.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from fanreply.connectors.fanvue.payloads import as_str, first_present, parse_timestamp
from fanreply.core.config import Settings, settings as default_settings
from fanreply.core.errors import SignatureInvalid
from fanreply.core.logging import preview
from fanreply.db import repository
from fanreply.db.models import Creator
from fanreply.db.session import async_session
from fanreply.services.auto_reply import AutoReplier

logger = logging.getLogger("fanreply.fanvue.webhook")

EVENT_PATHS = ("event", "type", "eventType")
CREATOR_PATHS = ("creatorUuid", "creator_uuid", "creator.uuid", "data.creatorUuid", "data.creator.uuid", "data.recipientUuid")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """HMAC-SHA256 over the raw body, hex encoded. No secret configured means no check."""
    if not secret:
        logger.warning("FANVUE_WEBHOOK_SECRET not set, skipping signature verification")
        return
    if not signature:
        raise SignatureInvalid("Missing webhook signature")
    provided = signature.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided):
        raise SignatureInvalid("Invalid webhook signature")


@dataclass
class WebhookEvent:
    event: str
    creator_uuid: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload.get("payload")
        return cls(
            event=str(first_present(payload, EVENT_PATHS) or ""),
            creator_uuid=as_str(first_present(payload, CREATOR_PATHS)),
            data=data if isinstance(data, dict) else {},
        )


Handler = Callable[[Creator, Dict[str, Any]], Awaitable[None]]


class WebhookProcessor:
    def __init__(self, replier: AutoReplier, settings: Settings = default_settings, session_factory=async_session):
        self.replier = replier
        self.settings = settings
        self.session_factory = session_factory
        self._handlers: Dict[str, Handler] = {
            "message.received": self._message_received,
            "message.sent": self._message_sent,
            "subscriber.new": self._subscriber_new,
            "subscriber.expired": self._subscriber_expired,
            "tip.received": self._tip_received,
            "purchase.completed": self._purchase_completed,
        }

    async def process(self, event: WebhookEvent) -> bool:
        """Returns False when the event is for a creator we do not manage."""
        logger.info("Fanvue webhook received: %s creator=%s", event.event, event.creator_uuid)
        if not event.creator_uuid:
            logger.warning("Fanvue webhook %s without creator id", event.event)
            return False

        async with self.session_factory() as session:
            creator = await repository.find_creator_by_remote_uuid(session, event.creator_uuid)
        if creator is None:
            logger.warning("No creator found for Fanvue uuid %s", event.creator_uuid)
            return False

        handler = self._handlers.get(event.event)
        if handler is None:
            logger.info("Unknown Fanvue webhook event: %s", event.event)
            return True
        await handler(creator, event.data)
        return True

    # --- message events ---

    async def _message_received(self, creator: Creator, data: Dict[str, Any]) -> None:
        message_uuid = as_str(first_present(data, ("messageUuid", "uuid", "id")))
        sender_uuid = as_str(first_present(data, ("senderUuid", "sender.uuid", "fanUuid")))
        content = as_str(first_present(data, ("content", "text"))) or ""
        if not message_uuid or not sender_uuid:
            logger.warning("message.received without message or sender id for creator=%s", creator.id)
            return
        sent_at = parse_timestamp(data.get("createdAt"))

        async with self.session_factory() as session:
            chat = await repository.upsert_chat(
                session,
                creator.id,
                sender_uuid,
                fan_remote_id=sender_uuid,
                fan_username=first_present(data, ("senderUsername", "sender.username", "sender.handle")),
                fan_display_name=first_present(data, ("senderDisplayName", "sender.displayName")),
            )
            _, created = await repository.insert_message_if_absent(
                session,
                chat.id,
                message_uuid,
                "inbound",
                content,
                has_media=bool(data.get("attachments") or data.get("mediaIds")),
                sent_at=sent_at,
            )
            if created:
                await repository.bump_chat_activity(session, chat.id, sent_at, increment_unread=True)
            await session.commit()

        if not created:
            logger.info("Duplicate Fanvue message %s ignored", message_uuid)
            return
        logger.info("Saved message from %s for creator=%s: %r", sender_uuid, creator.id, preview(content))

        if creator.auto_reply_enabled and content.strip():
            await self._auto_reply(creator, sender_uuid, content, message_uuid, data)

    async def _auto_reply(
        self, creator: Creator, fan_uuid: str, content: str, message_uuid: str, data: Dict[str, Any]
    ) -> None:
        if self.replier.is_cooling(creator, fan_uuid):
            logger.info("Auto-reply for fan %s deferred, replied too recently", fan_uuid)
            return
        try:
            await self.replier.reply(
                creator,
                fan_uuid=fan_uuid,
                fan_message=content,
                remote_message_id=message_uuid,
                source="webhook",
                received_at=data.get("createdAt"),
            )
        except Exception:
            logger.exception("Webhook auto-reply failed for creator=%s fan=%s", creator.id, fan_uuid)

    async def _message_sent(self, creator: Creator, data: Dict[str, Any]) -> None:
        message_uuid = as_str(first_present(data, ("messageUuid", "uuid", "id")))
        recipient_uuid = as_str(first_present(data, ("recipientUuid", "recipient.uuid", "fanUuid")))
        if not message_uuid or not recipient_uuid:
            logger.warning("message.sent without message or recipient id for creator=%s", creator.id)
            return
        sent_at = parse_timestamp(data.get("createdAt"))
        content = as_str(first_present(data, ("content", "text")))
        async with self.session_factory() as session:
            chat = await repository.upsert_chat(session, creator.id, recipient_uuid, fan_remote_id=recipient_uuid)
            _, created = await repository.insert_message_if_absent(
                session, chat.id, message_uuid, "outbound", content, sent_at=sent_at
            )
            if created:
                await repository.bump_chat_activity(session, chat.id, sent_at, increment_unread=False)
            await session.commit()
        logger.info("Confirmed sent message to %s", recipient_uuid)

    # --- subscription / money events ---

    async def _subscriber_new(self, creator: Creator, data: Dict[str, Any]) -> None:
        subscriber_uuid = as_str(first_present(data, ("subscriberUuid", "user.uuid", "fanUuid")))
        if not subscriber_uuid:
            return
        async with self.session_factory() as session:
            await repository.upsert_chat(
                session,
                creator.id,
                subscriber_uuid,
                fan_remote_id=subscriber_uuid,
                fan_username=first_present(data, ("subscriberUsername", "user.username")),
                fan_display_name=first_present(data, ("subscriberDisplayName", "user.displayName")),
            )
            await session.commit()
        logger.info("New Fanvue subscriber %s for creator=%s at %s", subscriber_uuid, creator.id, data.get("price"))

    async def _subscriber_expired(self, creator: Creator, data: Dict[str, Any]) -> None:
        logger.info(
            "Fanvue subscription expired: %s for creator=%s",
            first_present(data, ("subscriberUsername", "subscriberUuid")),
            creator.id,
        )

    async def _tip_received(self, creator: Creator, data: Dict[str, Any]) -> None:
        sender_uuid = as_str(first_present(data, ("senderUuid", "sender.uuid")))
        amount = data.get("amount")
        note = data.get("message")
        logger.info("Tip received from %s for creator=%s: %s", sender_uuid, creator.id, amount)
        if not note or not sender_uuid:
            return

        # tips carry no message id of their own in older payloads
        tip_id = as_str(first_present(data, ("tipUuid", "uuid", "id"))) or f"{sender_uuid}:{data.get('createdAt')}"
        sent_at = parse_timestamp(data.get("createdAt"))
        async with self.session_factory() as session:
            chat = await repository.upsert_chat(
                session,
                creator.id,
                sender_uuid,
                fan_remote_id=sender_uuid,
                fan_username=data.get("senderUsername"),
            )
            _, created = await repository.insert_message_if_absent(
                session, chat.id, f"tip:{tip_id}", "inbound", f"[TIP ${amount}] {note}", sent_at=sent_at
            )
            if created:
                await repository.bump_chat_activity(session, chat.id, sent_at, increment_unread=True)
            await session.commit()

    async def _purchase_completed(self, creator: Creator, data: Dict[str, Any]) -> None:
        logger.info(
            "Purchase from %s for creator=%s: %s at %s",
            first_present(data, ("buyerUsername", "buyerUuid")),
            creator.id,
            data.get("contentType"),
            data.get("price"),
        )
