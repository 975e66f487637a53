from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    backend_variant: str = "openrouter"
    backend_config_path: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    gemini_base_url: str | None = None
    primary_model: str | None = None
    fallback_model: str | None = None
    openrouter_api_key: str | None = None
    backend_timeout_seconds: float = 180.0
    backend_connect_timeout_seconds: float = 10.0
    backend_read_timeout_seconds: float | None = None
    backend_write_timeout_seconds: float = 60.0
    backend_pool_timeout_seconds: float = 10.0
    stream_char_delay_seconds: float = 0.002
    gateway_audit_log_enabled: bool = False
    gateway_audit_log_path: str = "logs/gateway_attempts.jsonl"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def stream_delay(self) -> float:
        return max(0.0, self.stream_char_delay_seconds)


@lru_cache
def get_settings() -> Settings:
    return Settings()
