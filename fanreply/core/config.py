# fanreply/core/config.py
from __future__ import annotations
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    env: str = "dev"
    log_level: str = "INFO"
    database_url: str
    redis_url: str = "redis://localhost:6379/0"

    # --- Fanvue OAuth ---
    fanvue_client_id: str = ""
    fanvue_client_secret: str = ""
    fanvue_auth_url: str = "https://auth.fanvue.com/oauth2/auth"
    fanvue_token_url: str = "https://auth.fanvue.com/oauth2/token"
    fanvue_redirect_uri: str = ""
    fanvue_scopes: str = "read:self read:chat write:chat read:fan read:insights"
    oauth_state_ttl_seconds: int = 600
    token_refresh_buffer_seconds: int = 300
    oauth_timeout_seconds: float = 15.0

    # --- Fanvue API ---
    fanvue_api_base_url: str = "https://api.fanvue.com"
    fanvue_api_version: str = "2025-06-26"
    platform_timeout_seconds: float = 15.0

    # unset means webhook signatures are not verified (dev only)
    fanvue_webhook_secret: Optional[str] = None

    # --- AI generation ---
    ai_webhook_url: Optional[str] = None
    ai_timeout_seconds: float = 30.0
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    personas_dir: str = "personas"
    default_persona_id: str = "sweet"

    # --- auto-reply ---
    auto_reply_runner: Literal["inline", "celery", "off"] = "inline"
    auto_reply_interval_seconds: int = 30
    auto_reply_default_delay_seconds: int = 30
    auto_reply_chat_page_size: int = 20
    auto_reply_processed_cache_size: int = 10000

    # --- admin ---
    admin_api_key: Optional[str] = None


# module-level instance
settings = Settings()
