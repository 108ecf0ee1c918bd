# chatprojects/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore", populate_by_name=True
    )

    app_env: str = "dev"
    app_name: str = "ChatProjects"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    db_url: str = "sqlite:///data/chatprojects.db"
    cors_allowed_origins: str = Field(default="http://127.0.0.1:5173", validation_alias="CORS_ALLOWED_ORIGINS")

    # Provider credentials (default credential store)
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    gemini_api_key: Optional[str] = Field(default=None, validation_alias="GEMINI_API_KEY")
    openrouter_api_key: Optional[str] = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    chutes_api_key: Optional[str] = Field(default=None, validation_alias="CHUTES_API_KEY")

    # Provider endpoints
    openai_base_url: str = Field(default="https://api.openai.com/v1/", validation_alias="OPENAI_BASE_URL")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1/", validation_alias="ANTHROPIC_BASE_URL")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/", validation_alias="GEMINI_BASE_URL"
    )
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/", validation_alias="OPENROUTER_BASE_URL")
    chutes_base_url: str = Field(default="https://llm.chutes.ai/v1/", validation_alias="CHUTES_BASE_URL")
    openrouter_site_url: str = Field(default="http://localhost", validation_alias="OPENROUTER_SITE_URL")
    openrouter_app_title: str = Field(default="ChatProjects", validation_alias="OPENROUTER_APP_TITLE")

    provider_timeout_sec: float = Field(default=300.0, validation_alias="PROVIDER_TIMEOUT_SEC")
    provider_connect_timeout_sec: float = Field(default=30.0, validation_alias="PROVIDER_CONNECT_TIMEOUT_SEC")

    # Conversation defaults
    default_project_model: str = Field(default="gpt-4o", validation_alias="DEFAULT_PROJECT_MODEL")
    default_general_provider: str = Field(default="openai", validation_alias="DEFAULT_GENERAL_PROVIDER")
    default_general_model: str = Field(default="gpt-5.2-chat-latest", validation_alias="DEFAULT_GENERAL_MODEL")
    assistant_instructions: str = Field(default="", validation_alias="ASSISTANT_INSTRUCTIONS")
    history_limit: int = Field(default=20, validation_alias="HISTORY_LIMIT")
    default_image_prompt: str = Field(default="What is in this image?", validation_alias="DEFAULT_IMAGE_PROMPT")

    # Title generator
    title_provider: str = Field(default="openai", validation_alias="TITLE_PROVIDER")
    title_model: str = Field(default="gpt-4o-mini", validation_alias="TITLE_MODEL")
    title_max_chars: int = Field(default=50, validation_alias="TITLE_MAX_CHARS")
    title_fallback_words: int = Field(default=5, validation_alias="TITLE_FALLBACK_WORDS")

    # Uploads
    max_image_mb: int = Field(default=10, validation_alias="MAX_IMAGE_MB")

    # External collaborators
    projects_file: Optional[str] = Field(default=None, validation_alias="PROJECTS_FILE")
    auth_tokens: Dict[str, int] = Field(default_factory=dict, validation_alias="AUTH_TOKENS")

    # Outbound SSE
    sse_padding_bytes: int = Field(default=0, validation_alias="SSE_PADDING_BYTES")

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url

    def api_key_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider}_api_key", None)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
