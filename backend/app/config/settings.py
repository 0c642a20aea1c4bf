"""
Application Settings for the Exam Prep subscription backend

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

    Lifecycle knobs:
    - DEFAULT_TIER_NAME: tier users fall back to when a paid plan lapses
    - RECENT_PAPERS_LIMIT: size of the recent-papers window for capped tiers
    - PERIOD_LENGTH_MONTHS / YEARLY_TERM_MONTHS: quota and billing cadence
    """

    # Supabase Configuration
    supabase_url: str
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: str
    supabase_jwt_secret: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Subscription lifecycle
    default_tier_name: str = "free"
    recent_papers_limit: int = 2
    period_length_months: int = 1
    yearly_term_months: int = 12
    referral_code_length: int = 8

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # PayPal (sandbox by default)
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_webhook_id: Optional[str] = None
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"

    # Operator routes
    admin_api_key: Optional[str] = None

    # Database Configuration (SQLModel/SQLAlchemy)
    supabase_password: Optional[str] = None
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
    def validate_lifecycle(self) -> "Settings":
        """Reject inconsistent lifecycle and provider configuration."""
        if self.recent_papers_limit < 1:
            raise ValueError("RECENT_PAPERS_LIMIT must be at least 1")

        if self.period_length_months < 1 or self.yearly_term_months < 1:
            raise ValueError(
                "PERIOD_LENGTH_MONTHS and YEARLY_TERM_MONTHS must be positive"
            )

        # PayPal credentials only make sense as a pair
        if bool(self.paypal_client_id) != bool(self.paypal_client_secret):
            raise ValueError(
                "PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET must be set together"
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
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_webhook_id)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
