"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Bridge Flow Tracker application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# NXPC bridge on Avalanche C-Chain
DEFAULT_RPC_URL = "https://api.avax.network/ext/bc/C/rpc"
DEFAULT_BRIDGE_CONTRACT_ADDRESS = "0xa8baad3115A133B101EF935Cb2e198FD04F1C659"
DEFAULT_DEPLOY_BLOCK = 62066883 - 86400
DEFAULT_BRIDGE_TOKENS_SIGNATURE = (
    "BridgeTokens(address,bytes32,bytes32,address,address,address,uint256)"
)
DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE = "MintBridgeTokens(address,address,uint256)"
DEFAULT_CALIBRATION_BLOCK = 62130279
DEFAULT_CALIBRATION_TIMESTAMP = 1747382512


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or aiosqlite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; enables the ledger block cache when set",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Ledger RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default=DEFAULT_RPC_URL,
        alias="CHAIN_RPC_URL",
        description="Primary ledger RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback ledger RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before failing over",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout for a single RPC request",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class BridgeSettings(BaseSettings):
    """Bridge contract and event settings."""

    model_config = SettingsConfigDict(env_prefix="BRIDGE_", extra="ignore")

    contract_address: str = Field(
        default=DEFAULT_BRIDGE_CONTRACT_ADDRESS,
        alias="BRIDGE_CONTRACT_ADDRESS",
        description="Bridge contract emitting BridgeTokens/MintBridgeTokens",
    )
    deploy_block: int = Field(
        default=DEFAULT_DEPLOY_BLOCK,
        alias="BRIDGE_DEPLOY_BLOCK",
        ge=0,
        description="First block to sync when no checkpoint exists",
    )
    bridge_tokens_signature: str = Field(
        default=DEFAULT_BRIDGE_TOKENS_SIGNATURE,
        alias="BRIDGE_TOKENS_EVENT_SIGNATURE",
        description="Canonical signature of the outbound (lock) event",
    )
    mint_bridge_tokens_signature: str = Field(
        default=DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE,
        alias="BRIDGE_MINT_EVENT_SIGNATURE",
        description="Canonical signature of the inbound (mint) event",
    )

    @field_validator("contract_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("BRIDGE_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v

    @field_validator("bridge_tokens_signature", "mint_bridge_tokens_signature")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        v = v.replace(" ", "")
        if "(" not in v or not v.endswith(")"):
            raise ValueError("Event signature must look like Name(type1,type2,...)")
        return v


class SyncSettings(BaseSettings):
    """Chain sync loop settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    batch_size: int = Field(
        default=1000,
        alias="SYNC_BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Blocks per eth_getLogs window",
    )
    interval_seconds: int = Field(
        default=60,
        alias="SYNC_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="Delay between scheduled sync runs",
    )
    window_timeout_seconds: float = Field(
        default=120.0,
        alias="SYNC_WINDOW_TIMEOUT_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Upper bound for fetching and persisting one window",
    )
    checkpoint_id: str = Field(
        default="nxpc_sync",
        alias="SYNC_CHECKPOINT_ID",
        min_length=1,
        max_length=32,
        description="Key of the singleton sync_status row",
    )
    timestamp_strategy: Literal["rpc", "extrapolate"] = Field(
        default="rpc",
        alias="SYNC_TIMESTAMP_STRATEGY",
        description="Exact per-block lookup (rpc) or linear extrapolation from a calibration point",
    )
    calibration_block: int = Field(
        default=DEFAULT_CALIBRATION_BLOCK,
        alias="SYNC_CALIBRATION_BLOCK",
        ge=0,
        description="Block number of the extrapolation calibration point",
    )
    calibration_timestamp: int = Field(
        default=DEFAULT_CALIBRATION_TIMESTAMP,
        alias="SYNC_CALIBRATION_TIMESTAMP",
        ge=0,
        description="Unix timestamp of the calibration block",
    )
    seconds_per_block: float = Field(
        default=1.0,
        alias="SYNC_SECONDS_PER_BLOCK",
        gt=0.0,
        le=600.0,
        description="Assumed average block time for extrapolation",
    )
    timestamp_concurrency: int = Field(
        default=10,
        alias="SYNC_TIMESTAMP_CONCURRENCY",
        ge=1,
        le=100,
        description="Concurrent block lookups while resolving timestamps",
    )


class ApiSettings(BaseSettings):
    """HTTP API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="API_ENABLED",
        description="Serve the HTTP API alongside the sync scheduler",
    )
    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for the HTTP API",
    )
    port: int = Field(
        default=3000,
        alias="API_PORT",
        ge=1,
        le=65535,
        description="HTTP port for the API",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from bridge_flow_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.batch_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    bridge: BridgeSettings = Field(
        default_factory=lambda: BridgeSettings(
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
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
            },
            "bridge": {
                "contract_address": self.bridge.contract_address,
                "deploy_block": str(self.bridge.deploy_block),
            },
            "sync": {
                "batch_size": str(self.sync.batch_size),
                "interval_seconds": str(self.sync.interval_seconds),
                "timestamp_strategy": self.sync.timestamp_strategy,
            },
            "api": {
                "enabled": str(self.api.enabled),
                "port": str(self.api.port),
            },
            "log_level": self.log_level,
        }

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
