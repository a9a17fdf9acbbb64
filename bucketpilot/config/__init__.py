"""Configuration package."""

from bucketpilot.config.settings import (
    BankSettings,
    GeminiSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "BankSettings",
    "GeminiSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
