"""Settings from the environment (and an optional .env file) via pydantic-settings."""

from functools import lru_cache

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Engine
    max_flow_events: int = 256
    max_retained_flows: int = 1024
    max_retained_requests: int = 1024

    # Transport
    api_base_url: str = "/api"
    request_timeout_seconds: float = 10.0
    host: str = "0.0.0.0"
    port: int = 5000

    # Observability
    log_level: str = "INFO"
    log_format: str = "text"

    @field_validator("api_base_url")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        """Always a leading slash, never a trailing one ("" stays the root)."""
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("max_flow_events", "max_retained_flows", "max_retained_requests")
    @classmethod
    def positive_limit(cls, v: int, info: ValidationInfo) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
