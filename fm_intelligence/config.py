"""Settings loaded from the environment."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Priority chain: init kwargs > env vars > .env file > defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="FM_INTELLIGENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    backend: Literal["apple_fm", "scripted"] = "apple_fm"
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"
    prewarm_on_create: bool = True
    chat_instructions: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
