"""
Configuration management using Pydantic Settings.

Values load from COACH_* environment variables (or a .env file).
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChatSettings(BaseSettings):
    """Chat engine configuration."""

    model_config = SettingsConfigDict(env_prefix="COACH_", env_file=".env", extra="ignore")

    # Language-model backend
    backend_url: str = "http://localhost:54321"
    api_key: SecretStr = SecretStr("")
    completion_path: str = "/functions/v1/ai-coach"
    stream_path: str = "/functions/v1/stream-chat"
    request_timeout: float = 60.0
    streaming: bool = False

    # Conversation shaping
    context_window_turns: int = Field(default=5, ge=0)
    title_max_length: int = Field(default=30, ge=1)
    history_limit: int = Field(default=50, ge=1)
    include_welcome: bool = True
    max_sessions: int = Field(default=1000, ge=1)

    # Durable storage (PostgREST). In-memory storage when unset.
    persistence_url: Optional[str] = None
    persistence_api_key: SecretStr = SecretStr("")
    persistence_table: str = "ai_coach_conversations"

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    @property
    def completion_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{self.completion_path}"

    @property
    def stream_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}{self.stream_path}"

    def auth_headers(self) -> dict:
        key = self.api_key.get_secret_value()
        return {"Authorization": f"Bearer {key}"} if key else {}


@lru_cache
def get_settings() -> ChatSettings:
    """Get cached settings instance."""
    return ChatSettings()
