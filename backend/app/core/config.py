"""
Core configuration for Pulse Analytics.
Uses Pydantic Settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_env_values(cls, data):
        if not isinstance(data, dict):
            return data
        # Hosting platforms sometimes inject empty-string env vars.
        # Treat them as "unset" so typed fields (bool/int/float) don't crash on startup.
        return {key: value for key, value in data.items() if value != ""}

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # Relational database (PostgreSQL or MySQL)
    DATABASE_URL: str = "postgresql://localhost:5432/pulse"

    # Analytics backend routing
    # - "auto": use ClickHouse when CLICKHOUSE_URL is set, otherwise the relational DB
    # - "relational": always query DATABASE_URL
    # - "clickhouse": always query CLICKHOUSE_URL
    ANALYTICS_BACKEND: str = "auto"

    # ClickHouse
    CLICKHOUSE_URL: str = ""
    CLICKHOUSE_USER: str = "default"
    CLICKHOUSE_PASSWORD: str = ""
    CLICKHOUSE_DATABASE: str = "default"
    CLICKHOUSE_CONNECT_TIMEOUT: int = 5

    # Chat tools fall back to this website when the caller doesn't pass one.
    DEFAULT_WEBSITE_ID: str = ""

    # LLM chat
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    CHAT_MODEL: str = "gpt-4o-mini"
    CHAT_MAX_STEPS: int = 5
    CHAT_MAX_TOKENS: int = 1200

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"

    # Base URL used by scripts/test_tools.py
    TOOLS_API_BASE_URL: str = "http://localhost:8000"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
