# /mya_recovery/config/settings.py

import sys
from typing import Annotated, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # MongoDB
    mongo_atlas_uri: str
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = True

    # WhatsApp gateway (Evolution API)
    evolution_api_url: str | None = None
    evolution_api_key: str | None = None
    evolution_instance_name: str | None = None
    evolution_timeout_seconds: float = 15.0

    # Checkout links in recovery messages
    frontend_url: str = "https://myagestora.com.br"

    # External API
    cart_recovery_api_key: str | None = None  # Service key; grants every scope
    metrics_api_key: str | None = None

    # Recovery pipeline
    recovery_default_delay_minutes: int = 30
    recovery_default_max_attempts: int = 3
    recovery_batch_size: int = 100
    recovery_drain_interval_minutes: int = 5
    recovery_processing_timeout_minutes: int = 15
    recovery_max_requeues: int = 3
    recovery_session_expiry_days: int = 7
    scheduler_timezone: str = "America/Sao_Paulo"

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")
    cors_allowed_origins: Annotated[List[str], NoDecode] = Field(
        default=[
            "https://myagestora.com.br",
            "https://www.myagestora.com.br",
        ]
    )
    allowed_hosts: str = "myagestora.com.br,*.myagestora.com.br"

    # Observability
    alerting_webhook_url: str | None = None

    # Limits
    rate_limit_per_minute: int = 100
    track_rate_limit_per_minute: int = 30

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("evolution_api_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        if v is None:
            return v
        return v.strip().rstrip("/") or None

    @field_validator("cart_recovery_api_key")
    @classmethod
    def service_key_length_must_be_sufficient(cls, v):
        if v and len(v) < 32:
            raise ValueError("CART_RECOVERY_API_KEY must be at least 32 characters long")
        return v

    @field_validator(
        "recovery_default_delay_minutes",
        "recovery_default_max_attempts",
        "recovery_batch_size",
        "recovery_drain_interval_minutes",
        "recovery_processing_timeout_minutes",
        "recovery_session_expiry_days",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("Recovery timing and batch settings must be positive")
        return v

    @property
    def evolution_configured(self) -> bool:
        return bool(self.evolution_api_url and self.evolution_api_key and self.evolution_instance_name)


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if not settings_obj.evolution_configured:
                raise ValueError("EVOLUTION_API_URL, EVOLUTION_API_KEY and EVOLUTION_INSTANCE_NAME are required in production")
            if not settings_obj.frontend_url:
                raise ValueError("FRONTEND_URL is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
