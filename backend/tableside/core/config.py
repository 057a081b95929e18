"""Application configuration using pydantic-settings.

All environment variables are read through the ``settings`` object rather
than ``os.getenv()`` so that values are type-checked once at startup.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./tableside.db"

    # Security
    secret_key: str = _DEFAULT_SECRET
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ==========================================================================
    # Table sessions
    # ==========================================================================
    alias_max_attempts: int = 50

    # ==========================================================================
    # Split bills
    # ==========================================================================
    default_currency: str = "EUR"
    # "none" keeps round(T/N) for everyone, "first_participant" absorbs the residual
    split_residual_policy: Literal["none", "first_participant"] = "none"
    split_custom_strict: bool = False
    stale_contribution_minutes: int = 15
    # Seconds between background reconciliation sweeps; 0 disables the sweep
    reconcile_interval_seconds: int = 300

    # ==========================================================================
    # Payment provider
    # ==========================================================================
    payment_provider: Literal["sandbox", "stripe"] = "sandbox"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    payment_provider_timeout_seconds: float = 10.0

    # ==========================================================================
    # Realtime
    # ==========================================================================
    ws_max_connections_per_topic: int = 1000

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == _DEFAULT_SECRET or len(v) < 32:
            import warnings
            warnings.warn(
                "SECRET_KEY is the default or shorter than 32 characters.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Refuse unsafe settings outside debug mode."""
        if not self.debug:
            if self.secret_key == _DEFAULT_SECRET or len(self.secret_key) < 32:
                raise ValueError(
                    "FATAL: Cannot start in production mode without a SECRET_KEY "
                    "of at least 32 characters."
                )
            if self.payment_provider == "stripe" and not self.stripe_secret_key:
                raise ValueError(
                    "FATAL: PAYMENT_PROVIDER=stripe requires STRIPE_SECRET_KEY."
                )
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list, filtering localhost in production."""
        if self.cors_origins == "*":
            return ["*"]

        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

        if not self.debug:
            localhost_patterns = ["localhost", "127.0.0.1", "0.0.0.0"]
            origins = [o for o in origins if not any(p in o for p in localhost_patterns)]

        return origins


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
