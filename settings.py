"""Application settings and configuration."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration, read from env vars / .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Referral Commission Service"
    env: str = "development"
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    allowed_origins: str = "*"

    # Storage
    store_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = "dbname=referrals user=referrals password=secret host=localhost port=5432"


# Global settings instance
settings = Settings()
