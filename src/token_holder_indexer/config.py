"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
token holder indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (RPC response cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    enabled: bool = Field(
        default=False,
        alias="REDIS_ENABLED",
        description="Cache immutable RPC reads (blocks) in Redis",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class RpcSettings(BaseSettings):
    """Chain RPC endpoints and retry policy."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    primary_url: str | None = Field(
        default=None,
        alias="RPC_PRIMARY_URL",
        description="Primary (usually authenticated) RPC endpoint",
    )
    fallback_url: str | None = Field(
        default=None,
        alias="RPC_FALLBACK_URL",
        description="Fallback RPC endpoint used while the primary is unhealthy",
    )
    public_url: str | None = Field(
        default=None,
        alias="RPC_PUBLIC_URL",
        description="Best-effort public RPC endpoint, tried last",
    )
    chain_id: int = Field(
        default=1,
        alias="RPC_CHAIN_ID",
        ge=1,
        description="Chain ID of the indexed network",
    )
    connect_timeout_seconds: float = Field(
        default=5.0,
        alias="RPC_CONNECT_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Timeout for the connectivity probe of each endpoint",
    )
    max_retries: int = Field(
        default=3,
        alias="RPC_MAX_RETRIES",
        ge=0,
        le=20,
        description="Retries after the first attempt of an RPC call",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        description="Client-side rate limit across all RPC calls",
    )

    @field_validator("primary_url", "fallback_url", "public_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @property
    def configured(self) -> bool:
        """Check if at least one endpoint is configured."""
        return any((self.primary_url, self.fallback_url, self.public_url))


class SyncSettings(BaseSettings):
    """Event fetching and ledger sync settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    chunk_size_blocks: int = Field(
        default=1000,
        alias="SYNC_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=500_000,
        description="Block chunk size for eth_getLogs scans",
    )
    min_chunk_size_blocks: int = Field(
        default=100,
        alias="SYNC_MIN_CHUNK_SIZE_BLOCKS",
        ge=1,
        description="Floor for adaptive chunk shrinking; failing chunks at this size are skipped",
    )
    max_chunk_size_blocks: int = Field(
        default=5000,
        alias="SYNC_MAX_CHUNK_SIZE_BLOCKS",
        ge=1,
        description="Ceiling for chunk sizes",
    )
    needs_sync_threshold_blocks: int = Field(
        default=5,
        alias="SYNC_NEEDS_SYNC_THRESHOLD_BLOCKS",
        ge=0,
        description="Ledger lag (blocks) beyond which a sync is considered necessary",
    )
    quick_sync_blocks: int = Field(
        default=100,
        alias="SYNC_QUICK_SYNC_BLOCKS",
        ge=1,
        le=100_000,
        description="Largest gap closed by the quick sync that runs before ledger reads",
    )
    inline_timeout_seconds: float = Field(
        default=5.0,
        alias="SYNC_INLINE_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Time budget for the opportunistic sync before current snapshots",
    )

    @field_validator("max_chunk_size_blocks")
    @classmethod
    def validate_max_chunk(cls, v: int) -> int:
        if v < 100:
            raise ValueError("SYNC_MAX_CHUNK_SIZE_BLOCKS must be >= 100")
        return v


class SnapshotSettings(BaseSettings):
    """Snapshot caching settings."""

    model_config = SettingsConfigDict(env_prefix="SNAPSHOT_", extra="ignore")

    cache_ttl_seconds: int = Field(
        default=15 * 60,
        alias="SNAPSHOT_CACHE_TTL_SECONDS",
        ge=0,
        le=7 * 24 * 3600,
        description="TTL for cached snapshots",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from token_holder_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.chunk_size_blocks)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    snapshot: SnapshotSettings = Field(
        default_factory=lambda: SnapshotSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "redis_enabled": str(self.redis.enabled),
            "rpc": {
                "primary_url": self._redact_url(self.rpc.primary_url) if self.rpc.primary_url else "(not set)",
                "fallback_url": self._redact_url(self.rpc.fallback_url) if self.rpc.fallback_url else "(not set)",
                "public_url": self.rpc.public_url or "(not set)",
                "chain_id": str(self.rpc.chain_id),
            },
            "sync": {
                "chunk_size_blocks": str(self.sync.chunk_size_blocks),
                "min_chunk_size_blocks": str(self.sync.min_chunk_size_blocks),
                "max_chunk_size_blocks": str(self.sync.max_chunk_size_blocks),
                "quick_sync_blocks": str(self.sync.quick_sync_blocks),
            },
            "snapshot_cache_ttl_seconds": str(self.snapshot.cache_ttl_seconds),
            "log_level": self.log_level,
        }

    def validate_requirements(
        self,
        *,
        command: Literal["sync", "rebuild", "snapshot", "validate", "merkle", "detect", "init-db"],
    ) -> None:
        """Validate command-specific requirements.

        Commands that talk to the chain refuse to run without an RPC endpoint.
        """
        if command in ("sync", "snapshot", "detect") and not self.rpc.configured:
            raise ValueError("RPC_PRIMARY_URL (or RPC_FALLBACK_URL / RPC_PUBLIC_URL) is required for this command")
        if self.sync.min_chunk_size_blocks > self.sync.max_chunk_size_blocks:
            raise ValueError("SYNC_MIN_CHUNK_SIZE_BLOCKS must not exceed SYNC_MAX_CHUNK_SIZE_BLOCKS")
        if not (self.sync.min_chunk_size_blocks <= self.sync.chunk_size_blocks <= self.sync.max_chunk_size_blocks):
            raise ValueError("SYNC_CHUNK_SIZE_BLOCKS must lie between the min and max chunk sizes")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
