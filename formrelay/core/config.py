"""Application settings.

Values come from the environment (or a local ``.env``) through
pydantic-settings. The dispatch engine never reads ``settings`` directly:
``DispatchConfig.from_settings`` freezes the relevant values into a struct
that is handed to the orchestrator at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from formrelay.core.exceptions import RetryPolicy


class Settings(BaseSettings):
    """Global settings loaded from environment variables and ``.env``."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "formrelay"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # Downstream
    API_BASE_URL: str = "http://localhost:3000/api"
    DELIVERY_TIMEOUT_S: float = Field(default=30.0, gt=0)
    RATE_LIMIT_PER_MINUTE: int | None = Field(default=60, ge=0)

    # Dispatch engine
    MAX_CONCURRENT: int = Field(default=5, ge=1)
    MAX_WORKERS: int = Field(default=5, ge=1)
    MAX_RETRIES: int = Field(default=3, ge=0)
    RETRY_BASE_DELAY_S: float = Field(default=5.0, ge=0)
    DEFAULT_PRIORITY: int = Field(default=1, ge=0)

    # Enrichment
    ENRICHMENT_ENABLED: bool = False
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    ENRICHMENT_MAX_TOKENS: int = 500

    # Secrets
    ENCRYPTION_KEY: str | None = None
    SECRET_TTL_S: float = 3600.0


settings = Settings()


@dataclass(frozen=True)
class DispatchConfig:
    """Frozen engine configuration injected into the orchestrator."""

    max_concurrent: int = 5
    max_workers: int = 5
    max_retries: int = 3
    base_delay_s: float = 5.0
    delivery_timeout_s: float = 30.0
    base_url: str = "http://localhost:3000/api"
    default_priority: int = 1

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.default_priority < 0:
            raise ValueError("default_priority must be >= 0")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, base_delay_s=self.base_delay_s)

    @classmethod
    def from_settings(cls, s: Settings) -> DispatchConfig:
        return cls(
            max_concurrent=s.MAX_CONCURRENT,
            max_workers=s.MAX_WORKERS,
            max_retries=s.MAX_RETRIES,
            base_delay_s=s.RETRY_BASE_DELAY_S,
            delivery_timeout_s=s.DELIVERY_TIMEOUT_S,
            base_url=s.API_BASE_URL,
            default_priority=s.DEFAULT_PRIORITY,
        )
