"""Application configuration with environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Portal settings loaded from ``ILLUSTRE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ILLUSTRE_", env_file=".env", extra="ignore"
    )

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Storage; ":memory:" keeps everything in process
    DATABASE_PATH: str = "illustre.sqlite3"
    SEED_DEMO_DATA: bool = True
    DEFAULT_ORGANIZATION_SLUG: str = "illustre"

    # Session tokens
    JWT_SECRET: str = "change-this-in-production"
    JWT_EXPIRES_HOURS: int = 24

    # Links put into emails and Stripe redirects
    PUBLIC_BASE_URL: str = "https://illustre.com"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "eur"

    # Outgoing email; leaving SMTP_HOST empty only records and logs messages
    EMAIL_FROM: str = "illustre! <no-reply@illustre.com>"
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True

    # Demo accounts created with the seed data
    DEMO_PASSWORD: str = "Illustre2024!"


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
