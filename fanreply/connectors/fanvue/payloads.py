# fanreply/connectors/fanvue/payloads.py
"""
Field lookups for Fanvue JSON.

Fanvue has shipped several shapes for the same objects (`uuid` vs `id`,
`text` vs `content`, nested `sender` vs flat `senderUuid`). Each accessor
lists the accepted paths in priority order and returns the first non-empty one.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

FAN_UUID_PATHS = ("user.uuid", "user.id", "fan.uuid", "fan.id", "recipient.uuid", "recipientUuid", "fanUuid")
CHAT_ID_PATHS = ("uuid", "id", "chatId")
FAN_USERNAME_PATHS = ("user.handle", "user.username", "fan.username", "user.displayName")
FAN_DISPLAY_NAME_PATHS = ("user.displayName", "fan.displayName", "user.handle")
MESSAGE_ID_PATHS = ("uuid", "id", "messageUuid")
MESSAGE_TEXT_PATHS = ("text", "content")
SENDER_UUID_PATHS = ("sender.uuid", "senderUuid", "sender.id")


def first_present(obj: Any, paths: Sequence[str]) -> Any:
    for path in paths:
        value: Any = obj
        for part in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        if value not in (None, ""):
            return value
    return None


def as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def fan_uuid_of_chat(chat: Dict[str, Any]) -> Optional[str]:
    return as_str(first_present(chat, FAN_UUID_PATHS))


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # epoch millis from the browser extension, seconds otherwise
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
