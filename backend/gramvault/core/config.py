"""
GramVault - Configuration
=========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "GramVault"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./gramvault.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Platform
    # ==========================================================================
    PLATFORM_API_URL: str = "https://i.instagram.com/api/v1"
    PLATFORM_UPLOAD_URL: str = "https://i.instagram.com/rupload_igphoto"
    SIG_KEY: str = "109513c04303341a7daf27bb329532b6a76c178d78911a750e0620efaffb2d0c"
    SIG_KEY_VERSION: str = "4"
    APP_ID: str = "936619743392459"
    BLOKS_VERSION_ID: str = "0a3ae4c88248863609c67e278f34af44673cff300bc76add965a9fb036bd3ca3"
    CAPABILITIES: str = "36r/F/8="
    APP_VERSION_STRING: str = "275.0.0.27.98"
    APP_LOCALE: str = "en_US"
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    UPLOAD_TIMEOUT_SECONDS: float = 60.0
    READ_LANE_RETRIES: int = 2
    READ_LANE_RETRY_DELAY_SECONDS: float = 1.0

    # ==========================================================================
    # Abuse Guard
    # ==========================================================================
    MAX_ACTIONS_PER_HOUR: int = 55  # platform limit is roughly 60
    RATE_WINDOW_SECONDS: float = 3600.0
    BACKOFF_CAP_SECONDS: float = 300.0
    BACKOFF_JITTER_RATIO: float = 0.3
    LOCKDOWN_HTTP_429_SECONDS: float = 300.0
    LOCKDOWN_CHALLENGE_SECONDS: float = 600.0
    LOCKDOWN_LOGIN_REQUIRED_SECONDS: float = 1800.0
    LOCKDOWN_SPAM_SECONDS: float = 600.0
    LOCKDOWN_TEMP_BLOCK_SECONDS: float = 900.0
    LOCKDOWN_PRECAUTIONARY_SECONDS: float = 300.0
    CONSECUTIVE_FAIL_THRESHOLD: int = 3

    # ==========================================================================
    # Network
    # ==========================================================================
    STABILIZATION_SECONDS: float = 4.0
    CONNECTIVITY_TIMEOUT_SECONDS: float = 30.0
    CONNECTIVITY_POLL_SECONDS: float = 0.5
    NETWORK_PROBE_INTERVAL_SECONDS: float = 5.0
    NETWORK_PROBE_HOST: str = "i.instagram.com"
    NETWORK_PROBE_PORT: int = 443
    DEFAULT_CONNECTION_KIND: Literal["wifi", "cellular", "wired", "other"] = "wifi"

    # ==========================================================================
    # Pacing (seconds, low/high bounds for uniform draws)
    # ==========================================================================
    PRE_CONFIGURE_DELAY: tuple[float, float] = (3.0, 7.0)
    PRE_CONFIGURE_JITTER: tuple[float, float] = (0.0, 1.0)
    PRE_ARCHIVE_DELAY: tuple[float, float] = (5.0, 10.0)
    ARCHIVE_DELAY: tuple[float, float] = (3.0, 6.0)
    ARCHIVE_JITTER: tuple[float, float] = (0.0, 0.5)
    UNARCHIVE_DELAY: tuple[float, float] = (2.0, 3.0)
    WARM_UP_DELAY: tuple[float, float] = (1.0, 2.0)
    ITEM_COOLDOWN: tuple[float, float] = (160.0, 220.0)
    COOLDOWN_BUFFER: tuple[float, float] = (5.0, 15.0)
    AUTO_RETRY_BASE_SECONDS: float = 60.0
    AUTO_RETRY_JITTER: tuple[float, float] = (0.0, 30.0)
    MAX_AUTO_RETRIES: int = 3
    NETWORK_WAIT_SECONDS: float = 120.0
    ESCALATED_PAUSE_SECONDS: float = 300.0
    BOT_LOCKDOWN_SECONDS: float = 900.0
    COUNTDOWN_TICK_SECONDS: float = 1.0

    # ==========================================================================
    # Codec
    # ==========================================================================
    COMPRESSION_TARGET_BYTES: int = 480 * 1024
    COMPRESSION_MIN_QUALITY: float = 0.70
    COMPRESSION_MAX_QUALITY: float = 0.95
    COMPRESSION_FALLBACK_QUALITY: float = 0.82
    COMPRESSION_MAX_DIMENSION: int = 1080
    ASPECT_TOLERANCE: float = 0.05
    UNIQUEIFY_PIXELS: tuple[int, int] = (15, 30)
    UNIQUEIFY_INTENSITY: tuple[int, int] = (1, 3)
    UNIQUEIFY_QUALITY: tuple[float, float] = (0.82, 0.88)

    # ==========================================================================
    # Activity Log
    # ==========================================================================
    ACTIVITY_LOG_SIZE: int = 500

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
