"""
Configuration

Loads settings from environment variables (prefix ``ESG_``) or a ``.env`` file.
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="ESG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL in production, SQLite locally
    database_url: str = "sqlite:///./esg.db"
    echo_sql: bool = False

    # Connection pool settings (ignored for SQLite)
    pool_size: int = 5
    max_overflow: int = 10

    # Attempts per upsert before the latest committed state is returned
    upsert_max_attempts: int = 3

    audit_default_page_size: int = 200
    audit_max_page_size: int = 1000

    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _normalise_postgres_scheme(cls, url: str) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql://", 1)
        return url

    @field_validator("upsert_max_attempts", "audit_max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
