"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from purchase_saga.domain.retry import RetryPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_command_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for a single database command"
    )

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    scheduler_lock_ttl_ms: int = Field(
        default=55_000, description="Retry scheduler tick lock TTL (milliseconds)"
    )

    # Message Broker Configuration
    rabbitmq_url: str = Field(..., description="RabbitMQ connection URL")
    payment_exchange: str = Field(default="payment.exchange", description="Payment exchange name")
    payment_request_routing_key: str = Field(default="payment.request")
    payment_request_queue: str = Field(default="payment.request.queue")
    payment_confirmation_routing_key: str = Field(default="payment.confirmation")
    payment_confirmation_queue: str = Field(default="payment.confirmation.queue")
    payment_failure_routing_key: str = Field(default="payment.failure")
    payment_failure_queue: str = Field(default="payment.failure.queue")
    message_ttl_ms: int = Field(
        default=1_800_000, description="Payment request time-to-live (milliseconds)"
    )
    publish_timeout_seconds: float = Field(default=10.0, description="Broker publish timeout")
    consumer_prefetch_count: int = Field(default=10, description="Concurrent deliveries per consumer")
    message_source: str = Field(default="order-service", description="Value of the source header")
    message_schema_version: str = Field(default="1.0", description="Value of the version header")

    # Application Configuration
    app_name: str = Field(default="purchase-saga", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Payment Retry
    retry_max_attempts: int = Field(default=5, description="Max payment request attempts per order")
    retry_base_delay_seconds: float = Field(
        default=60.0, description="Base delay for retry backoff (seconds)"
    )
    retry_max_delay_seconds: float = Field(
        default=1800.0, description="Ceiling for retry backoff (seconds)"
    )
    retry_tick_interval_seconds: float = Field(default=60.0, description="Retry scheduler interval")
    retry_batch_size: int = Field(default=50, description="Max records handled per scheduler tick")
    payment_timeout_seconds: float = Field(
        default=1800.0, description="Time to wait for an answer to the final attempt"
    )
    stale_retry_threshold_seconds: float = Field(
        default=7200.0, description="Age after which an unresolved saga is reported as stale"
    )
    retry_history_retention_days: int = Field(
        default=30, description="Retention for terminal retry histories (days)"
    )

    # Payment Gateway
    gateway_timeout_seconds: float = Field(default=30.0, description="Payment gateway call timeout")

    # Outbox Relay
    outbox_poll_interval_seconds: float = Field(default=5.0, description="Outbox polling interval")
    outbox_batch_size: int = Field(default=50, description="Outbox entries relayed per batch")
    outbox_max_publish_failures: int = Field(
        default=5, description="Publish failures after which an entry is parked"
    )
    outbox_retention_hours: int = Field(
        default=24, description="Retention for published outbox entries (hours)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "retry_max_attempts",
        "retry_base_delay_seconds",
        "retry_max_delay_seconds",
        "retry_tick_interval_seconds",
        "retry_batch_size",
        "payment_timeout_seconds",
        "stale_retry_threshold_seconds",
        "message_ttl_ms",
        "publish_timeout_seconds",
        "outbox_poll_interval_seconds",
        "outbox_batch_size",
        "outbox_max_publish_failures",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate that a limit or delay is positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "Settings":
        """Backoff ceiling must not be below the base delay."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy consumed by the scheduler and the listeners."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
