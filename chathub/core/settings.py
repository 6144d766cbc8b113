# chathub/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    app_env: str = "dev"
    app_name: str = "Chathub"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    db_url: str = "sqlite:///data/chathub.db"

    cors_allowed_origins: str = Field(default="http://127.0.0.1:5173", validation_alias="CORS_ALLOWED_ORIGINS")

    # Local runtime (Ollama)
    ollama_base_url: Optional[Union[AnyUrl, str]] = Field(
        default="http://127.0.0.1:11434", validation_alias="OLLAMA_BASE_URL"
    )
    local_provider: str = Field(default="ollama", validation_alias="LOCAL_PROVIDER")

    # Stream timeouts (seconds). Idle resets on every chunk, total never resets.
    stream_idle_timeout_sec: float = Field(default=300.0, validation_alias="STREAM_IDLE_TIMEOUT_SEC")
    stream_total_timeout_sec: float = Field(default=600.0, validation_alias="STREAM_TOTAL_TIMEOUT_SEC")
    stream_connect_timeout_sec: float = Field(default=10.0, validation_alias="STREAM_CONNECT_TIMEOUT_SEC")

    # Prompt caps: transport entry point and runtime client boundary
    chat_prompt_max_chars: int = Field(default=2000, validation_alias="CHAT_PROMPT_MAX_CHARS")
    runtime_prompt_max_chars: int = Field(default=1000, validation_alias="RUNTIME_PROMPT_MAX_CHARS")

    # Model allow-list cache
    model_cache_ttl_sec: float = Field(default=300.0, validation_alias="MODEL_CACHE_TTL_SEC")
    model_fallback_list: List[str] = Field(
        default_factory=lambda: ["gemma:2b", "phi:2.7b"], validation_alias="MODEL_FALLBACK_LIST"
    )

    # SSE keep-alive
    sse_heartbeat_sec: float = Field(default=30.0, validation_alias="SSE_HEARTBEAT_SEC")

    # Hosted providers
    provider_timeout_sec: float = Field(default=60.0, validation_alias="PROVIDER_TIMEOUT_SEC")
    history_max_messages: int = Field(default=20, validation_alias="HISTORY_MAX_MESSAGES")

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url

    @property
    def effective_prompt_max_chars(self) -> int:
        return min(self.chat_prompt_max_chars, self.runtime_prompt_max_chars)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
