"""
Configuration Management for BucketPilot

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every external endpoint the ledger core talks to (sync backend, bank
proxy, assistant, spreadsheet storage) is declared in one place and
validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger and rule-engine behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Comma-separated; matched case-insensitively against category tags,
    # merchant name and description.
    transfer_keywords: str = Field(
        default="transfer,payment,credit card,xfer",
        description="Keywords that mark a transaction as transfer-like"
    )
    default_bucket_priority: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Priority given to buckets created without one"
    )
    default_rule_priority: int = Field(
        default=5,
        ge=0,
        description="Priority given to rules created without one"
    )
    assistant_source_tag: str = Field(
        default="ai",
        description="Source id stamped on events created from assistant actions"
    )
    manual_source_tag: str = Field(
        default="manual",
        description="Source id stamped on events created from user actions"
    )

    @property
    def transfer_keywords_list(self) -> list[str]:
        """Get transfer keywords as a list."""
        return [
            keyword.strip().lower()
            for keyword in self.transfer_keywords.split(",")
            if keyword.strip()
        ]


class SyncSettings(BaseSettings):
    """Event sync backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the sync backend"
    )
    api_key: Optional[str] = Field(
        default=None,
        description="Bearer token sent with sync requests"
    )
    device_id: Optional[str] = Field(
        default=None,
        description="Identifier of this device, attached to pushed events"
    )
    page_size: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Maximum events returned per pull page"
    )
    max_pages_per_cycle: int = Field(
        default=20,
        ge=1,
        description="Upper bound on pull pages fetched in one sync cycle"
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for push/pull requests"
    )

    @field_validator('backend_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class BankSettings(BaseSettings):
    """Bank-data proxy configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BANK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the backend exposing /plaid routes"
    )
    api_key: Optional[str] = Field(
        default=None,
        description="Bearer token for the bank proxy"
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for bank requests"
    )
    lookback_days: int = Field(
        default=30,
        ge=1,
        le=730,
        description="Default date range for transaction fetches"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

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
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Worksheet names within the spreadsheet
    allocations_sheet_name: str = Field(default="Allocations")
    events_sheet_name: str = Field(default="Events")
    buckets_sheet_name: str = Field(default="Buckets")
    rules_sheet_name: str = Field(default="Rules")
    mappings_sheet_name: str = Field(default="MerchantMappings")
    transactions_sheet_name: str = Field(default="Transactions")
    splits_sheet_name: str = Field(default="Splits")
    sync_state_sheet_name: str = Field(default="SyncState")
    audit_sheet_name: str = Field(default="AuditLog")

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


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration for the assistant collaborator."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=2048,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Sub-settings are loaded lazily so a device without a spreadsheet or
    assistant key can still run the ledger and sync.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def bank(self) -> BankSettings:
        return BankSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with an extra
    "<name>_error" entry for each section that failed to load.
    """
    results = {}
    settings = get_settings()

    for name in ("ledger", "sync", "bank", "google_sheets", "gemini"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
