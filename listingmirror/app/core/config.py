"""Application configuration using pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment settings for the listing monitor."""

    model_config = SettingsConfigDict(env_file=(".env",), env_nested_delimiter="__")

    app_name: str = "Listing Mirror"
    environment: Literal["local", "staging", "production"] = "local"
    api_prefix: str = "/api"
    log_level: str = "INFO"
    database_url: str = "postgresql+asyncpg://listings:listings@db:5432/listings"
    marketplace_name: str = "SourceX"
    marketplace_base_url: str = "https://sourcex.in"
    marketplace_api_url: str = "https://api.culture-circle.com/graphql"
    marketplace_channel: str = "culturecircle"
    marketplace_email: str | None = None
    marketplace_password: str | None = None
    marketplace_page_size: int = 100
    marketplace_timeout_seconds: float = 30.0
    marketplace_token_refresh_buffer_seconds: int = 300
    sync_enabled: bool = True
    sync_interval_seconds: int = 60
    sync_min_wait_seconds: int = 5
    reprice_enabled: bool = True
    reprice_interval_seconds: int = 300
    upsert_chunk_size: int = 500
    partial_fetch_threshold: float = 0.10
    default_commission_basis_points: int = 1400
    duplicate_mutation_window_minutes: int = 5
    notification_window_hours: int = 24
    alert_webhook_url: str | None = None
    frontend_url: str | None = None


@lru_cache
def get_settings() -> Settings:
    """Return cached settings."""

    return Settings()


settings = get_settings()
