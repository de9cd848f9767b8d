from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Central configuration for the funnel backend.

    - Reads from .env (local) and process environment.
    - Every field has a local-dev default so the app boots with an empty env.
    - Ignores extra env vars so adding new ones doesn't break startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Core app
    # -------------------------------------------------------------------------
    app_name: str = Field(default="Funnel Backend", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")
    environment: str = Field(default="local", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    cors_origins_raw: Optional[str] = Field(default=None, alias="CORS_ORIGINS")

    @property
    def cors_origins(self) -> list[str]:
        return _split_csv(self.cors_origins_raw)

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default="sqlite:///./funnel.db",
        alias="DATABASE_URL",
    )

    # -------------------------------------------------------------------------
    # Identity stitching
    # -------------------------------------------------------------------------
    # Lifetime of an email <-> visitor bridge association.
    bridge_ttl_days: int = Field(default=7, alias="BRIDGE_TTL_DAYS")

    # Owner assigned to leads / funnel rows when a webhook carries none.
    default_owner_id: Optional[str] = Field(default=None, alias="DEFAULT_OWNER_ID")

    # Webhook auth:
    #   WEBHOOK_API_KEYS=key1,key2
    webhook_api_keys_raw: Optional[str] = Field(
        default=None,
        alias="WEBHOOK_API_KEYS",
    )

    @property
    def webhook_api_keys(self) -> list[str]:
        """
        Returns a list of API keys from the comma-separated env string.
        Safe if env is missing or empty.
        """
        return _split_csv(self.webhook_api_keys_raw)

    # -------------------------------------------------------------------------
    # Stripe (payment webhooks)
    # -------------------------------------------------------------------------
    stripe_api_key: Optional[str] = Field(default=None, alias="STRIPE_API_KEY")
    stripe_webhook_secret: Optional[str] = Field(
        default=None,
        alias="STRIPE_WEBHOOK_SECRET",
    )

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------
    admin_dashboard_secret: Optional[str] = Field(
        default=None,
        alias="ADMIN_DASHBOARD_SECRET",
    )


def _split_csv(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader so config is evaluated once per process.
    """
    settings = Settings()
    logger.info(
        "Settings loaded (env=%s, debug=%s, bridge_ttl_days=%s)",
        settings.environment,
        settings.debug,
        settings.bridge_ttl_days,
    )
    return settings


# Singleton used everywhere else
settings: Settings = get_settings()
