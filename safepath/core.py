"""Application configuration and settings management.

This module defines the application settings loaded from environment
variables and provides helper functions for accessing cached settings,
email configuration and logging setup.
"""

import logging
from functools import lru_cache
from typing import List

from fastapi_mail import ConnectionConfig
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Attributes:
        DATABASE_URL: Database connection string.
        SECRET_KEY: Secret key used for JWT signing.
        ALGORITHM: Algorithm used to encode JWT tokens.
        ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime in minutes.
        REFRESH_TOKEN_EXPIRE_MINUTES: Refresh token lifetime in minutes.
        ALLOWED_ORIGINS: Allowed origins for CORS.
        REDIS_URL: Redis connection URL for rate limiting and caching.
        CLOUDINARY_URL: Cloudinary connection URL for profile images and
            emergency media.
        SMTP_FROM_EMAIL: Sender email address for outgoing alerts.
        SMTP_FROM_NAME: Display name used for outgoing alerts.
        SMTP_USER: SMTP username.
        SMTP_PASSWORD: SMTP password.
        SMTP_PORT: SMTP server port.
        SMTP_HOST: SMTP server host. Email is disabled when the host or
            credentials are empty.
        TWILIO_ACCOUNT_SID: Twilio account identifier. SMS is disabled
            when empty.
        TWILIO_AUTH_TOKEN: Twilio auth token.
        TWILIO_PHONE_NUMBER: Sender number for SMS alerts.
        FIREBASE_CREDENTIALS: Service account JSON, inline or as a path.
            Push is disabled when empty.
        GOOGLE_MAPS_API_KEY: Key for geocoding, places and directions.
        GEMINI_API_KEY: Key for the first-aid assistant.
        GEMINI_MODEL: Gemini model name.
        HTTP_TIMEOUT_SECONDS: Timeout applied to outbound HTTP lookups.
        TRIGGER_DEDUP_SECONDS: Window in which a repeated trigger returns
            the existing emergency. ``0`` disables the guard.
        MAX_CONTACTS: Maximum number of active contacts per user.
        RATE_LIMIT_TIMES: Requests allowed per window on limited routes.
        RATE_LIMIT_SECONDS: Rate limit window length.
        LOG_LEVEL: Root logging level.
    """

    DATABASE_URL: str = "sqlite:///./safepath.db"
    SECRET_KEY: str = "dev-secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    ALLOWED_ORIGINS: List[str] = ["*"]
    REDIS_URL: str = "redis://redis:6379"
    CLOUDINARY_URL: str | None = None
    SMTP_FROM_EMAIL: str = "noreply@example.com"
    SMTP_FROM_NAME: str = "SafePath Emergency"
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_PORT: int = 1025
    SMTP_HOST: str | None = None
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_PHONE_NUMBER: str | None = None
    FIREBASE_CREDENTIALS: str | None = None
    GOOGLE_MAPS_API_KEY: str | None = None
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-1.5-flash"
    HTTP_TIMEOUT_SECONDS: float = 8.0
    TRIGGER_DEDUP_SECONDS: int = 10
    MAX_CONTACTS: int = 10
    RATE_LIMIT_TIMES: int = 5
    RATE_LIMIT_SECONDS: int = 60
    LOG_LEVEL: str = "INFO"

    class Config:
        """Pydantic configuration for loading environment variables."""

        env_file = ".env"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings.

    The settings object is cached to prevent reloading environment
    variables multiple times during application lifetime.
    """

    return Settings()


def get_mail_config(settings: Settings | None = None) -> ConnectionConfig:
    """Create and return email configuration for FastAPI-Mail.

    Returns:
        ConnectionConfig: Configured email connection settings.
    """

    settings = settings or get_settings()
    return ConnectionConfig(
        MAIL_USERNAME=settings.SMTP_USER,
        MAIL_PASSWORD=settings.SMTP_PASSWORD,
        MAIL_FROM=settings.SMTP_FROM_EMAIL,
        MAIL_FROM_NAME=settings.SMTP_FROM_NAME,
        MAIL_PORT=settings.SMTP_PORT,
        MAIL_SERVER=settings.SMTP_HOST,
        MAIL_STARTTLS=True,
        MAIL_SSL_TLS=False,
        USE_CREDENTIALS=True,
    )


def setup_logging() -> None:
    """Configure root logging from ``LOG_LEVEL``."""
    level = getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
