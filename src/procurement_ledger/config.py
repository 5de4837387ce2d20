"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache

from pydantic import SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Database URL is assembled from individual components to match
    the official PostgreSQL Docker image environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"
    api_prefix: str = "/api/v1"

    # --- CORS ---
    cors_allowed_origins: list[str] = []
    cors_allow_credentials: bool = False
    cors_allowed_methods: list[str] = ["GET", "POST"]
    cors_allowed_headers: list[str] = ["Content-Type", "X-API-Key"]

    # --- PostgreSQL ---
    postgres_user: str = "procurement"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "procurement_ledger"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # --- Connection pool / transactions ---
    db_pool_size: int = 10
    db_max_overflow: int = 5
    # Applied per connection; a ledger transaction that cannot finish
    # within this window is aborted by PostgreSQL and rolled back.
    db_statement_timeout_ms: int = 15_000

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Assemble database URL from components.

        Uses psycopg v3 driver which supports both sync (create_engine)
        and async (create_async_engine) modes natively.
        """
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from procurement_ledger.config import get_settings
        settings = get_settings()
    """
    return Settings()


settings = get_settings()
