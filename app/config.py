"""
Rendezvous — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Rendezvous platform."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via connector, or a plain URL for local / tests
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "rendezvous_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "rendezvous"
    DB_CREATE_TABLES: bool = False
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = False

    # ------------------------------------------------------------------ #
    # Redis – rate-limit storage and readiness checks (optional)
    # ------------------------------------------------------------------ #
    REDIS_URL: str = ""

    # ------------------------------------------------------------------ #
    # Security / tokens
    # ------------------------------------------------------------------ #
    TOKEN_SECRET_KEY: str  # Fernet key used to seal access/refresh tokens
    ACCESS_TOKEN_TTL_DAYS: int = 7
    REFRESH_TOKEN_TTL_DAYS: int = 30

    # ------------------------------------------------------------------ #
    # Verification codes & SMS delivery
    # ------------------------------------------------------------------ #
    SMS_CODE_TTL_MINUTES: int = 10
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"
    SMS_APP_NAME: str = "Rendezvous"

    # ------------------------------------------------------------------ #
    # Matching lifecycle
    # ------------------------------------------------------------------ #
    MATCH_TTL_HOURS: int = 24
    MEETING_DELAY_MINUTES: int = 30
    MATCH_SWEEP_INTERVAL_SECONDS: int = 0  # 0 disables the active sweeper

    # ------------------------------------------------------------------ #
    # Proximity search bounds (metres)
    # ------------------------------------------------------------------ #
    NEARBY_MIN_RADIUS_M: int = 100
    NEARBY_MAX_RADIUS_M: int = 200_000
    NEARBY_DEFAULT_RADIUS_M: int = 100_000
    MAP_MIN_RADIUS_M: int = 1_000
    MAP_MAX_RADIUS_M: int = 200_000
    MAP_DEFAULT_RADIUS_M: int = 50_000

    # ------------------------------------------------------------------ #
    # Realtime channel
    # ------------------------------------------------------------------ #
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    LOCATION_SHARE_DEFAULT_MS: int = 300_000
    LOCATION_SHARE_MAX_MS: int = 3_600_000

    # ------------------------------------------------------------------ #
    # Rate limiting (slowapi / limits syntax)
    # ------------------------------------------------------------------ #
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = ""  # falls back to REDIS_URL, then memory://
    GENERAL_RATE_LIMIT: str = "100 per 15 minutes"
    SMS_RATE_LIMIT: str = "5 per hour"

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Map display defaults (Tokyo)
    # ------------------------------------------------------------------ #
    MAP_DEFAULT_CENTER: Dict[str, float] = {"lat": 35.6762, "lng": 139.6503}
    MAP_DEFAULT_ZOOM: int = 12

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def strict_delivery(self) -> bool:
        """Roll back pending verification state when SMS delivery fails."""
        return self.is_production

    @property
    def rate_limit_storage_uri(self) -> str:
        return self.RATE_LIMIT_STORAGE_URI or self.REDIS_URL or "memory://"

    @field_validator("NEARBY_MIN_RADIUS_M", "MAP_MIN_RADIUS_M", "HEARTBEAT_INTERVAL_SECONDS")
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
