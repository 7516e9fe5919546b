# fanreply/deps.py
"""Process-wide component instances, exposed as FastAPI dependencies."""
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException

from fanreply.connectors.fanvue.client import FanvueClient
from fanreply.connectors.fanvue.events import WebhookProcessor
from fanreply.connectors.fanvue.oauth import FanvueOAuth
from fanreply.core.config import settings
from fanreply.services.ai_service import AIService
from fanreply.services.auto_reply import AutoReplier, AutoReplyState
from fanreply.workers.auto_reply import AutoReplyScheduler


@lru_cache
def get_oauth() -> FanvueOAuth:
    return FanvueOAuth()


@lru_cache
def get_fanvue_client() -> FanvueClient:
    return FanvueClient(get_oauth())


@lru_cache
def get_ai_service() -> AIService:
    return AIService()


@lru_cache
def get_auto_reply_state() -> AutoReplyState:
    return AutoReplyState.create(settings)


@lru_cache
def get_auto_replier() -> AutoReplier:
    return AutoReplier(get_ai_service(), get_fanvue_client(), get_auto_reply_state())


@lru_cache
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(get_auto_replier())


@lru_cache
def get_scheduler() -> AutoReplyScheduler:
    return AutoReplyScheduler(get_auto_replier())


async def require_admin(x_api_key: Optional[str] = Header(None)) -> None:
    if settings.admin_api_key and x_api_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="invalid api key")
