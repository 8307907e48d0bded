"""
Configuration Management for Balance Guard

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Each concern (backups, integrity checks, duplicate handling, the remote
store) gets its own settings class with its own environment prefix, so a
deployment can tune one area without touching the others.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackupSettings(BaseSettings):
    """Backup, restore and local fallback configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BALANCE_BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    page_size: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Rows fetched per page when reading the whole ledger"
    )
    restore_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Rows inserted per batch during restore"
    )
    snapshot_version: str = Field(
        default="2.0",
        description="Format version stamped on every snapshot"
    )
    export_version: str = Field(
        default="1.0.0",
        description="Format version stamped on exported files"
    )

    # Local fallback
    local_max_snapshots: int = Field(
        default=10,
        ge=1,
        description="Snapshots retained in local storage (oldest evicted first)"
    )
    local_cache_dir: str = Field(
        default=".balance_cache",
        description="Directory used as local durable storage"
    )
    local_max_bytes: Optional[int] = Field(
        default=None,
        ge=1,
        description="Optional quota for local storage in bytes"
    )

    # Scheduling
    auto_backup_interval_minutes: int = Field(
        default=15,
        ge=1,
        description="Interval between automatic backups"
    )
    daily_backup_enabled: bool = Field(
        default=True,
        description="Take an additional backup every 24 hours"
    )
    weekly_backup_enabled: bool = Field(
        default=True,
        description="Take an additional backup every 7 days"
    )
    backup_on_startup: bool = Field(
        default=True,
        description="Take a backup as soon as the scheduler starts"
    )

    verify_checksum_on_restore: bool = Field(
        default=True,
        description="Refuse to restore a snapshot whose checksum does not match"
    )


class IntegritySettings(BaseSettings):
    """Integrity check and data-loss alert configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BALANCE_INTEGRITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    check_interval_minutes: int = Field(
        default=5,
        ge=1,
        description="Interval between scheduled integrity checks"
    )
    max_alerts: int = Field(
        default=50,
        ge=1,
        description="Data-loss alerts kept in memory (oldest dropped first)"
    )
    min_year: int = Field(
        default=1900,
        description="Earliest valid transaction year"
    )
    max_year: int = Field(
        default=2100,
        description="Latest valid transaction year"
    )
    emergency_backup_on_data_loss: bool = Field(
        default=True,
        description="Create a backup when a scheduled check detects data loss"
    )

    @field_validator('max_year')
    @classmethod
    def validate_year_range(cls, v: int, info) -> int:
        """Make sure the valid year window is not empty."""
        min_year = info.data.get("min_year")
        if min_year is not None and v < min_year:
            raise ValueError("max_year cannot be before min_year")
        return v


class DuplicateSettings(BaseSettings):
    """Duplicate cleanup and accidental-duplicate prevention configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BALANCE_DUPLICATES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    window_minutes: int = Field(
        default=5,
        ge=0,
        description="Trailing window in which an identical insert is accidental"
    )
    cleanup_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Rows deleted per batch during bulk cleanup"
    )
    cleanup_interval_hours: int = Field(
        default=24,
        ge=1,
        description="Interval between scheduled duplicate cleanups"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    transactions_sheet_name: str = Field(
        default="Transactions",
        description="Name of the sheet for transactions"
    )
    backups_sheet_name: str = Field(
        default="Backups",
        description="Name of the sheet for snapshots"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
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
    log_level: str = Field(
        default="INFO",
        description="Log level for the command-line entry point"
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

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def backup(self) -> BackupSettings:
        return BackupSettings()

    @property
    def integrity(self) -> IntegritySettings:
        return IntegritySettings()

    @property
    def duplicates(self) -> DuplicateSettings:
        return DuplicateSettings()

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

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("backup", "integrity", "duplicates", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
