from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from arq.connections import RedisSettings
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_ROOT = Path(__file__).parent.parent
REPO_ROOT = Path(__file__).parent.parent.parent
MODE = os.getenv("MODE", "local")

OCRProviderName = Literal["google-vision", "tesseract", "none"]


class Settings(BaseSettings):
    """Runtime configuration resolved from the environment."""

    model_config = SettingsConfigDict(
        env_file=REPO_ROOT / ".env" if MODE == "local" else REPO_ROOT / ".env.prod",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_api_key: str | None = None
    openrouter_default_model: str = "openai/gpt-4o-mini"
    completion_timeout_seconds: float = 60.0

    google_vision_api_key: str | None = None
    ocr_provider: OCRProviderName = "tesseract"
    ocr_fallback_provider: OCRProviderName = "none"
    ocr_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    ocr_timeout_ms: int = Field(default=30_000, gt=0)

    max_context_messages: int = Field(default=20, ge=1)
    safety_event_queue_size: int = Field(default=100, ge=1)
    safety_event_timeout_seconds: float = Field(default=5.0, gt=0)

    channel_prefix: str = "chat"
    key_prefix: str = "tutor"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    def chat_channel(self, session_id: str) -> str:
        return f"{self.channel_prefix}:{session_id}:events"

    def session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    def user_sessions_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:sessions"

    def message_key(self, message_id: str) -> str:
        return f"{self.key_prefix}:message:{message_id}"

    def session_messages_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}:messages"

    def template_key(self, template_id: str) -> str:
        return f"{self.key_prefix}:template:{template_id}"

    def user_templates_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:templates"

    def user_safety_events_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}:safety_events"

    @property
    def redis_settings(self) -> RedisSettings:
        return RedisSettings(
            host=self.redis_host,
            port=self.redis_port,
            database=self.redis_db,
        )


settings = Settings()
