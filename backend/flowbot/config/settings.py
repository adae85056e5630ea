# /flowbot/config/settings.py

import sys
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage
    store_backend: str = "mongo"  # "mongo" or "memory"
    mongo_uri: str | None = None
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = True

    # Redis (optional: enables cross-worker address locks)
    redis_url: str | None = None

    # WhatsApp Cloud API
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_verify_token: str
    whatsapp_app_secret: str | None = None
    whatsapp_api_version: str = "v18.0"

    # AI providers
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    ai_timeout_seconds: float = 30.0

    # Structured data
    google_sheets_api_key: str | None = None

    # Engine behaviour
    max_hops_per_event: int = 50
    http_node_timeout_ms: int = 10000
    session_timeout_minutes: int = 1440
    webhook_sweep_grace_seconds: int = 60
    address_lock_timeout_seconds: float = 30.0

    # Deployment
    workers: int = 4
    environment: str = "production"
    log_level: str = "INFO"
    cors_allowed_origins: str = "*"

    # App Metadata
    api_version: str = "v1"

    # ---------------- Validators ---------------- #

    @field_validator("store_backend")
    @classmethod
    def store_backend_must_be_known(cls, v: str) -> str:
        v = v.lower()
        if v not in ("mongo", "memory"):
            raise ValueError("STORE_BACKEND must be 'mongo' or 'memory'")
        return v

    @field_validator("max_hops_per_event")
    @classmethod
    def hop_ceiling_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_HOPS_PER_EVENT must be at least 1")
        return v

    @model_validator(mode="after")
    def mongo_uri_required_for_mongo_backend(self):
        if self.store_backend == "mongo" and not self.mongo_uri:
            raise ValueError("MONGO_URI is required when STORE_BACKEND=mongo")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if not settings_obj.whatsapp_verify_token:
            raise ValueError("WHATSAPP_VERIFY_TOKEN is required")

        if settings_obj.environment == "production":
            for var in ["whatsapp_access_token", "whatsapp_phone_id"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
