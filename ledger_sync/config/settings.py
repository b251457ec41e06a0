"""
Configuration Management for Ledger Sync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see which knobs the sync core exposes and
ensures all configuration is validated before a sync round starts.

Password and salt are NOT configuration. They are supplied by the
caller (prompting and salt storage live outside this package).
"""

import socket
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_client_id() -> str:
    return f"client-{socket.gethostname()}"


class CryptoSettings(BaseSettings):
    """Key derivation parameters (scrypt)."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_CRYPTO_",
        extra="ignore"
    )

    scrypt_log_n: int = Field(
        default=15,
        ge=10,
        le=20,
        description="log2 of the scrypt CPU/memory cost parameter"
    )
    scrypt_r: int = Field(
        default=8,
        ge=1,
        description="scrypt block size parameter"
    )
    scrypt_p: int = Field(
        default=1,
        ge=1,
        description="scrypt parallelization parameter"
    )
    salt_size: int = Field(
        default=16,
        ge=16,
        le=64,
        description="Size in bytes of a freshly generated ledger salt"
    )

    @property
    def scrypt_n(self) -> int:
        """The scrypt cost parameter itself."""
        return 2 ** self.scrypt_log_n


class SyncSettings(BaseSettings):
    """Sync round behaviour: identity, retries and leases."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_SYNC_",
        extra="ignore"
    )

    client_id: str = Field(
        default_factory=_default_client_id,
        min_length=1,
        max_length=128,
        description=(
            "Human-readable client name for logs and audit events; "
            "the remote identifies clients by their store's instance id"
        )
    )
    ledger_id: str = Field(
        default="default",
        min_length=1,
        max_length=128,
        description="Identifier of the ledger on the remote"
    )

    # Network retries
    max_network_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Attempts per remote call before the round is aborted"
    )
    backoff_multiplier: float = Field(
        default=0.5,
        ge=0.0,
        description="Exponential backoff multiplier in seconds"
    )
    backoff_min_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Lower bound for a single backoff wait"
    )
    backoff_max_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Upper bound for a single backoff wait"
    )

    # Lease handling
    lease_retry_attempts: int = Field(
        default=10,
        ge=1,
        description="How many times to retry when another client holds the lease"
    )
    lease_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay between lease acquisition attempts"
    )
    lease_ttl_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="How long a lease stays valid without being released"
    )

    @model_validator(mode='after')
    def validate_backoff_bounds(self) -> 'SyncSettings':
        """Backoff bounds must be ordered."""
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("backoff_max_seconds cannot be below backoff_min_seconds")
        return self


class StorageSettings(BaseSettings):
    """Local storage and directory transport locations."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_STORAGE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="ledger.sqlite3",
        description="Path to the local SQLite ledger database"
    )
    remote_directory: Optional[str] = Field(
        default=None,
        description="Shared directory used by the directory remote transport"
    )

    @field_validator('remote_directory')
    @classmethod
    def validate_remote_directory(cls, v: Optional[str]) -> Optional[str]:
        """Warn if the shared directory doesn't exist (it may be mounted later)."""
        if v is not None and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Remote directory not found at {v}. "
                "Make sure it is mounted before syncing."
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

    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for local structured logs"
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

    # Sub-settings are built on access so a missing section
    # only fails the code path that needs it

    @property
    def crypto(self) -> CryptoSettings:
        return CryptoSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

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


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name_error: message} for each failure.
    """
    results = {}
    settings = get_settings()

    for name in ("crypto", "sync", "storage", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
