import secrets
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Papr Chat"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    # 60 minutes * 24 hours * 8 days = 8 days
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 8
    APP_URL: str = "http://localhost:3000"

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "app"
    DATABASE_URL: str | None = None

    FIRST_SUPERUSER: str = "admin@example.com"
    FIRST_SUPERUSER_PASSWORD: str = "changethis"

    LLM_API_KEY: str | None = None
    LLM_BASE_URL: str | None = None
    MODEL_DEFAULT: str = "gpt-5-mini"
    MODEL_TITLE: str = "gpt-5-nano"
    MODEL_INSIGHTS: str = "gpt-5-nano"
    CHAT_HISTORY_WINDOW: int = 15
    CHAT_MAX_TOOL_STEPS: int = 5

    PAPR_MEMORY_API_KEY: str | None = None
    PAPR_MEMORY_BASE_URL: str = "https://memory.papr.ai"
    MEMORY_SEARCH_MAX_RESULTS: int = 25

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_BASIC_PRICE_ID: str | None = None
    STRIPE_PRO_PRICE_ID: str | None = None

    REALTIME_HEARTBEAT_SECONDS: float = 30.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ASYNCPG_DSN(self) -> str:
        """Plain libpq DSN for the dedicated LISTEN connection."""
        return self.SQLALCHEMY_DATABASE_URI.replace("postgresql+psycopg://", "postgresql://", 1)

    @property
    def memory_enabled(self) -> bool:
        return bool(self.PAPR_MEMORY_API_KEY)


settings = Settings()  # type: ignore
