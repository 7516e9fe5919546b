# fanreply/db/models.py
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Creator(Base):
    __tablename__ = "creators"
    id = sa.Column(sa.Integer, primary_key=True, index=True)
    name = sa.Column(sa.String, nullable=False)
    of_username = sa.Column(sa.String, nullable=True)             # first-party platform handle
    persona_id = sa.Column(sa.String, nullable=True)
    auto_reply_enabled = sa.Column(sa.Boolean, nullable=False, default=False, index=True)
    auto_reply_delay_seconds = sa.Column(sa.Integer, nullable=True)

    # Fanvue OAuth connection; access token NULL <=> disconnected
    fanvue_access_token = sa.Column(sa.Text, nullable=True)
    fanvue_refresh_token = sa.Column(sa.Text, nullable=True)
    fanvue_token_expires_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    fanvue_user_uuid = sa.Column(sa.String, nullable=True, index=True)
    fanvue_username = sa.Column(sa.String, nullable=True)

    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
    updated_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_connected(self) -> bool:
        return bool(self.fanvue_access_token)


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        sa.UniqueConstraint("creator_id", "remote_chat_id", name="uq_chats_creator_remote"),
    )

    id = sa.Column(sa.Integer, primary_key=True, index=True)
    creator_id = sa.Column(sa.Integer, sa.ForeignKey("creators.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = sa.Column(sa.String, nullable=False, default="fanvue")  # 'fanvue' | 'onlyfans'
    remote_chat_id = sa.Column(sa.String, nullable=True)               # Fanvue keys chats by fan uuid
    fan_remote_id = sa.Column(sa.String, nullable=True)
    fan_username = sa.Column(sa.String, nullable=True)
    fan_display_name = sa.Column(sa.String, nullable=True)
    last_message_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    unread_count = sa.Column(sa.Integer, nullable=False, default=0)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
    updated_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    creator = relationship("Creator", backref="chats")


class Message(Base, AsyncAttrs):
    __tablename__ = "messages"
    __table_args__ = (
        sa.UniqueConstraint("platform", "remote_message_id", name="uq_messages_platform_remote"),
    )

    id = sa.Column(sa.Integer, primary_key=True, index=True)
    chat_id = sa.Column(sa.Integer, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = sa.Column(sa.String, nullable=False, default="fanvue")
    remote_message_id = sa.Column(sa.String, nullable=False)
    direction = sa.Column(sa.String, nullable=False)                   # 'inbound' | 'outbound'
    content = sa.Column(sa.Text, nullable=True)
    has_media = sa.Column(sa.Boolean, nullable=False, default=False)
    sent_by_ai = sa.Column(sa.Boolean, nullable=False, default=False)
    sent_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)

    chat = relationship("Chat", backref="messages")


class AIResponseLog(Base):
    __tablename__ = "ai_responses"
    id = sa.Column(sa.Integer, primary_key=True, index=True)
    creator_id = sa.Column(sa.Integer, sa.ForeignKey("creators.id", ondelete="SET NULL"), nullable=True, index=True)
    message_id = sa.Column(sa.Integer, sa.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    persona_id = sa.Column(sa.String, nullable=True)
    source = sa.Column(sa.String, nullable=False, default="manual")   # webhook | scheduler | extension | manual
    input_text = sa.Column(sa.Text, nullable=False)
    output_text = sa.Column(sa.Text, nullable=False)
    latency_ms = sa.Column(sa.Integer, nullable=True)
    was_used = sa.Column(sa.Boolean, nullable=False, default=False)
    was_edited = sa.Column(sa.Boolean, nullable=False, default=False)
    feedback = sa.Column(sa.Text, nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow)
