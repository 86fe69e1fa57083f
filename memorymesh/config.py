"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from enum import StrEnum
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Deployment mode. Governs whether broker loss is fatal."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class QueueMode(StrEnum):
    """
    Queue degradation level.

    - REDIS: full broker, connected eagerly at startup
    - LAZY: broker connected after a short delay or on first use
    - MEMORY: no broker, in-process queues only
    """

    REDIS = "redis"
    LAZY = "lazy"
    MEMORY = "memory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Environment.DEVELOPMENT

    # Broker (BULL_REDIS_URL wins over REDIS_URL)
    broker_url: str = Field(
        default="redis://localhost:6379",
        validation_alias=AliasChoices("bull_redis_url", "redis_url", "broker_url"),
    )
    broker_connect_timeout_seconds: float = 5.0
    broker_max_retries_per_request: int = 1
    broker_key_prefix: str = "memorymesh"

    # Queues
    queue_mode: QueueMode = QueueMode.REDIS
    queue_init_delay_seconds: float = 1.0
    queue_stalled_interval_ms: int = 30_000
    queue_max_stalled_count: int = 1

    # Cache
    cache_default_ttl_seconds: int = 3600
    cache_local_refresh_ttl_seconds: int = 60
    cache_key_prefix: str = "cache"
    cache_shared_enabled: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_secret_key: str = "your-secret-key-change-in-production"
    api_algorithm: str = "HS256"
    api_access_token_expire_minutes: int = 30
    api_key: str | None = None
    admin_base_path: str = "/admin/queues"

    # Worker Configuration
    worker_id: str | None = None
    worker_poll_interval_seconds: float = 1.0
    worker_concurrency: int = 4
    worker_heartbeat_interval_seconds: float = 10.0
    worker_handler_modules: list[str] = []

    # Reaper Configuration
    reaper_interval_seconds: int = 10

    # Outbox
    outbox_path: str = "~/.memorymesh/outbox.json"
    sync_backend_url: str = "http://localhost:54321"
    sync_backend_api_key: str | None = None
    sync_backend_timeout_seconds: float = 30.0

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "memorymesh-dispatch"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @property
    def is_production(self) -> bool:
        """Broker unavailability is fatal only in production."""
        return self.environment == Environment.PRODUCTION


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
