"""Configuration package."""

from balance_guard.config.settings import (
    AppSettings,
    BackupSettings,
    DuplicateSettings,
    GoogleSheetsSettings,
    IntegritySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "BackupSettings",
    "DuplicateSettings",
    "GoogleSheetsSettings",
    "IntegritySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
