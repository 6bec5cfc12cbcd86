"""Configuration management loaded from environment and .env."""

import os
from typing import List, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from project root
# This ensures dotenv works regardless of where the process is started from
project_root = Path(__file__).parent.parent.parent
env_file = project_root / ".env"

# override=False means existing environment variables take precedence
load_dotenv(dotenv_path=env_file, override=False)


def _get_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to default on empty values."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _get_float(name: str, default: float) -> float:
    """Read a float env var, falling back to default on empty values."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


class Config:
    """Application configuration."""
    # Application
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    ADMIN_API_KEY: Optional[str] = os.getenv("ADMIN_API_KEY")

    # Storage
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./storage/wabridge.db")
    MEDIA_STORAGE_PATH: str = os.getenv("MEDIA_STORAGE_PATH", "./storage/media")
    MEDIA_PUBLIC_BASE_URL: Optional[str] = os.getenv("MEDIA_PUBLIC_BASE_URL")
    MEDIA_MAX_AGE_SECONDS: int = _get_int("MEDIA_MAX_AGE_SECONDS", 24 * 60 * 60)
    MEDIA_CLEANUP_INTERVAL_SECONDS: int = _get_int("MEDIA_CLEANUP_INTERVAL_SECONDS", 60 * 60)

    # Anti-ban throttle
    MIN_DELAY_MS: int = _get_int("MIN_DELAY_MS", 2000)
    MAX_DELAY_MS: int = _get_int("MAX_DELAY_MS", 10000)
    TYPING_DURATION_MS: int = _get_int("TYPING_DURATION_MS", 1500)
    TEXT_RATE_LIMIT: int = _get_int("TEXT_RATE_LIMIT", 10)
    MEDIA_RATE_LIMIT: int = _get_int("MEDIA_RATE_LIMIT", 5)
    RATE_LIMIT_WINDOW_SECONDS: float = _get_float("RATE_LIMIT_WINDOW_SECONDS", 60.0)

    # Queue / relay
    QUEUE_MAX_RETRIES: int = _get_int("QUEUE_MAX_RETRIES", 3)
    QUEUE_DEQUEUE_TIMEOUT: int = _get_int("QUEUE_DEQUEUE_TIMEOUT", 5)
    QUEUE_ERROR_BACKOFF_SECONDS: float = _get_float("QUEUE_ERROR_BACKOFF_SECONDS", 1.0)

    # Session reconnects
    RECONNECT_BASE_SECONDS: float = _get_float("RECONNECT_BASE_SECONDS", 1.0)
    RECONNECT_MAX_DELAY_SECONDS: float = _get_float("RECONNECT_MAX_DELAY_SECONDS", 30.0)
    RECONNECT_MAX_ATTEMPTS: int = _get_int("RECONNECT_MAX_ATTEMPTS", 5)
    HISTORY_SYNC_MAX_AGE_SECONDS: int = _get_int("HISTORY_SYNC_MAX_AGE_SECONDS", 60 * 60)

    # amoCRM OAuth + chat channel
    AMOCRM_CLIENT_ID: str = os.getenv("AMOCRM_CLIENT_ID", "")
    AMOCRM_CLIENT_SECRET: str = os.getenv("AMOCRM_CLIENT_SECRET", "")
    AMOCRM_REDIRECT_URI: str = os.getenv(
        "AMOCRM_REDIRECT_URI", "http://localhost:8000/auth/amocrm/callback"
    )
    AMOCRM_SUBDOMAIN: str = os.getenv("AMOCRM_SUBDOMAIN", "")
    AMOCRM_SCOPE_ID: str = os.getenv("AMOCRM_SCOPE_ID", "")  # static fallback scope
    AMOCRM_CHANNEL_ID: str = os.getenv("AMOCRM_CHANNEL_ID", "")
    AMOCRM_CHANNEL_CODE: str = os.getenv("AMOCRM_CHANNEL_CODE", "")
    AMOCRM_CHANNEL_SECRET: str = os.getenv("AMOCRM_CHANNEL_SECRET", "")
    AMOCRM_CHANNEL_TITLE: str = os.getenv("AMOCRM_CHANNEL_TITLE", "WhatsApp Gateway")
    AMOJO_BASE_URL: str = os.getenv("AMOJO_BASE_URL", "https://amojo.amocrm.ru")
    CRM_HTTP_TIMEOUT: float = _get_float("CRM_HTTP_TIMEOUT", 15.0)

    # Messaging-network protocol gateway (Evolution API)
    EVOLUTION_BASE_URL: str = os.getenv("EVOLUTION_BASE_URL", "http://localhost:8080")
    EVOLUTION_API_KEY: str = os.getenv("EVOLUTION_API_KEY", "")
    EVOLUTION_WEBHOOK_URL: Optional[str] = os.getenv("EVOLUTION_WEBHOOK_URL")
    PROTOCOL_HTTP_TIMEOUT: float = _get_float("PROTOCOL_HTTP_TIMEOUT", 30.0)

    def oauth_url(self, subdomain: str) -> str:
        """Token endpoint for an amoCRM account subdomain."""
        return f"https://{subdomain}.amocrm.ru/oauth2/access_token"

    def validate(self) -> List[str]:
        """
        Return the names of settings required by the CRM path that are unset.

        Missing values are not fatal at startup: accounts without CRM
        setup fail per message with a configuration error instead.
        """
        missing = []
        for name in (
            "AMOCRM_CLIENT_ID",
            "AMOCRM_CLIENT_SECRET",
            "AMOCRM_CHANNEL_ID",
            "AMOCRM_CHANNEL_SECRET",
        ):
            if not getattr(self, name):
                missing.append(name)
        return missing


config = Config()
