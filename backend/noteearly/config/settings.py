"""
Application Settings for NoteEarly Billing

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Stripe keys and the JWT secret may be empty in development and tests;
    production refuses to start without them.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Redirect targets for Stripe-hosted pages
    client_url: str = "http://localhost:3000"
    frontend_url: str = "http://localhost:3000"

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_version: str = "2024-06-20"
    stripe_max_network_retries: int = 2

    # Used when a profile has no email but Stripe needs one
    billing_fallback_email_domain: str = "noteearly.com"

    # Auth (tokens are issued by the auth service, verified here)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Require billing and auth secrets outside development."""
        if self.is_production:
            missing = [
                name for name in ("stripe_secret_key", "stripe_webhook_secret", "jwt_secret")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"Missing required production settings: {', '.join(missing).upper()}"
                )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def checkout_success_url(self) -> str:
        return f"{self.client_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.client_url}/subscription/cancel"

    @property
    def portal_return_url(self) -> str:
        return f"{self.frontend_url}/admin/settings/subscription"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
