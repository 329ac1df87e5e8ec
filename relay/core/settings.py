# relay/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional, Union

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, friendly assistant. Provide concise and accurate responses."
)
DEFAULT_WEB_SEARCH_SUFFIX = (
    "Web search is enabled for this conversation: prefer recent, verifiable facts "
    "and say so when you are unsure whether information is current."
)


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore", populate_by_name=True
    )

    app_name: str = "Chat Relay"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    log_format: str = "json"
    db_url: str = "sqlite:///data/relay.db"

    # Model provider (OpenAI-compatible chat completions endpoint)
    provider_base_url: Union[AnyUrl, str] = Field(
        default="http://127.0.0.1:1234", validation_alias="PROVIDER_BASE_URL"
    )
    provider_chat_path: str = Field(default="/v1/chat/completions", validation_alias="PROVIDER_CHAT_PATH")
    provider_api_key: Optional[str] = Field(default=None, validation_alias="PROVIDER_API_KEY")
    provider_timeout_sec: float = Field(default=60.0, validation_alias="PROVIDER_TIMEOUT_SEC")

    # Generation defaults
    chat_model: str = Field(
        default="@cf/meta/llama-3.3-70b-instruct-fp8-fast", validation_alias="MODEL_ID"
    )
    temperature: float = Field(default=0.6, validation_alias="TEMPERATURE")
    default_max_output_tokens: int = Field(default=1024, validation_alias="MAX_OUTPUT_TOKENS")
    max_output_tokens_limit: int = Field(default=4096, validation_alias="MAX_OUTPUT_TOKENS_LIMIT")
    max_context_tokens: int = Field(default=6000, validation_alias="MAX_CONTEXT_TOKENS")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, validation_alias="SYSTEM_PROMPT")
    web_search_prompt_suffix: str = Field(
        default=DEFAULT_WEB_SEARCH_SUFFIX, validation_alias="WEB_SEARCH_PROMPT_SUFFIX"
    )

    # Rate limiting (best-effort, per process)
    rate_limit_window_sec: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SEC")
    rate_limit_max_requests: int = Field(default=20, validation_alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_key_header: str = Field(default="X-Forwarded-For", validation_alias="RATE_LIMIT_KEY_HEADER")

    # Turn coordination
    reject_concurrent_turns: bool = Field(default=False, validation_alias="REJECT_CONCURRENT_TURNS")
    shutdown_grace_sec: float = Field(default=30.0, validation_alias="SHUTDOWN_GRACE_SEC")

    cors_allowed_origins: str = Field(default="*", validation_alias="CORS_ALLOWED_ORIGINS")

    @property
    def provider_chat_url(self) -> str:
        return str(self.provider_base_url).rstrip("/") + "/" + self.provider_chat_path.lstrip("/")

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()
