"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``SANKOFA_`` prefix; carrier, Redis and Supabase
settings use their canonical environment variable names via
``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the Sankofa messaging service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``SANKOFA_``; infrastructure keys
    use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="SANKOFA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Redis ──────────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    queue_redis_url: str = Field(default="", validation_alias="QUEUE_REDIS_URL")

    # ── Carrier gateway ────────────────────────────────────────────────
    sms_provider: Literal["mock", "twilio", "africastalking"] = Field(
        default="mock", validation_alias="SMS_PROVIDER",
    )
    twilio_account_sid: str = Field(default="", validation_alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", validation_alias="TWILIO_AUTH_TOKEN")
    twilio_phone_number: str = Field(default="", validation_alias="TWILIO_PHONE_NUMBER")
    at_username: str = Field(default="", validation_alias="AT_USERNAME")
    at_api_key: str = Field(default="", validation_alias="AT_API_KEY")
    at_sender_id: str = Field(default="", validation_alias="AT_SENDER_ID")
    sms_timeout_seconds: float = Field(default=10.0, gt=0, validation_alias="SMS_TIMEOUT_SECONDS")

    # ── Delivery queue ─────────────────────────────────────────────────
    sms_chunk_size: int = Field(default=50, ge=1, validation_alias="SMS_CHUNK_SIZE")
    sms_max_attempts: int = Field(default=3, ge=1, validation_alias="SMS_MAX_ATTEMPTS")
    sms_backoff_seconds: float = Field(default=5.0, ge=0, validation_alias="SMS_BACKOFF_SECONDS")
    sms_default_priority: int = Field(default=5, validation_alias="SMS_DEFAULT_PRIORITY")
    sms_bulk_concurrency: int = Field(default=10, ge=1, validation_alias="SMS_BULK_CONCURRENCY")
    queue_worker_concurrency: int = Field(default=2, ge=1, validation_alias="QUEUE_WORKER_CONCURRENCY")
    queue_poll_interval_seconds: float = Field(
        default=1.0, gt=0, validation_alias="QUEUE_POLL_INTERVAL_SECONDS",
    )

    # ── USSD ───────────────────────────────────────────────────────────
    ussd_session_ttl_seconds: int = Field(default=300, ge=1, validation_alias="USSD_SESSION_TTL_SECONDS")

    # ── Supabase (domain records + notification audit) ─────────────────
    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", validation_alias="SUPABASE_SERVICE_ROLE_KEY")
    notification_log_buffer: int = Field(default=1000, ge=1, validation_alias="NOTIFICATION_LOG_BUFFER")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def effective_queue_redis_url(self) -> str:
        return self.queue_redis_url or self.redis_url

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
