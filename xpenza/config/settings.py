"""
Configuration Management for Xpenza

Uses pydantic-settings for type-safe configuration from environment variables.

All configuration is centralized here, so every external collaborator the
sync core talks to is visible in one place and validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Synchronization store behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="XPENZA_SYNC_",
        extra="ignore"
    )

    temp_id_prefix: str = Field(
        default="tmp-",
        min_length=1,
        description="Prefix of locally generated ids awaiting server confirmation"
    )
    default_ledger_name: str = Field(
        default="Main Book",
        description="Name of the ledger created for accounts without one"
    )
    default_ledger_icon: str = Field(
        default="book",
        description="Icon of the bootstrap ledger"
    )
    default_ledger_color: str = Field(
        default="#4F46E5",
        pattern=r"^#[0-9A-Fa-f]{6}$",
        description="Accent color of the bootstrap ledger"
    )
    recent_event_buffer: int = Field(
        default=200,
        ge=0,
        le=10000,
        description="How many sync events the audit logger keeps in memory"
    )


class CacheSettings(BaseSettings):
    """Local persistent cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="XPENZA_CACHE_",
        extra="ignore"
    )

    directory: str = Field(
        default=".xpenza-cache",
        description="Directory holding the cached JSON blobs"
    )
    store_key: str = Field(
        default="xpenza-transactions",
        description="Cache key of the synchronization store state"
    )
    settings_key: str = Field(
        default="xpenza-settings",
        description="Cache key of the user preferences"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets document store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the spreadsheet backing the document store"
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        ge=0.5,
        le=300.0,
        description="How often live watches re-read their worksheet"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency code used until the user picks one"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are built lazily so a partially configured
    # environment (no Google credentials) still works offline.

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, Optional[bool | str]]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with an extra
    "<name>_error" entry describing each failure.
    Useful for startup checks.
    """
    results: dict[str, Optional[bool | str]] = {}

    settings = get_settings()

    for name in ("sync", "cache", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
