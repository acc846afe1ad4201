"""
Configuration settings for the application
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_publishable_key: Optional[str] = Field(default=None, alias="STRIPE_PUBLISHABLE_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")

    # Pricing configuration
    stripe_price_pro_monthly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PRO_MONTHLY")
    stripe_price_pro_yearly: Optional[str] = Field(default=None, alias="STRIPE_PRICE_PRO_YEARLY")

    # Trial and reconciliation behaviour
    trial_days: int = Field(default=3, alias="TRIAL_DAYS")
    # None means a used trial is never granted again
    trial_regrant_after_days: Optional[int] = Field(default=None, alias="TRIAL_REGRANT_AFTER_DAYS")
    gateway_timeout_seconds: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_SECONDS")
    webhook_tolerance_seconds: int = Field(default=300, alias="WEBHOOK_TOLERANCE_SECONDS")
    reconcile_max_attempts: int = Field(default=3, alias="RECONCILE_MAX_ATTEMPTS")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    rate_limit_per_minute: int = Field(default=30, alias="RATE_LIMIT_PER_MINUTE")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Allow both field name and alias
        extra="ignore",
    )


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
