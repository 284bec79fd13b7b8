"""Configuration management using Pydantic Settings."""

import re
from typing import ClassVar

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from marketsync.shared.exceptions import ConfigError

# Singleton instance
_settings: "Settings | None" = None

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Chain configuration
    rpc_http_url: str
    rpc_ws_url: str
    marketplace_address: str
    chain_id: int = 11155111
    rpc_request_timeout_seconds: float = 15.0

    # Synchronization
    start_block: int = 0
    block_confirmations: int = 12
    sync_batch_size: int = 1000
    catchup_interval_seconds: int = 60
    reconnect_delay_seconds: float = 5.0
    queue_max_size: int = 1000

    # Reconciliation retry queue
    max_retry_attempts: int = 5
    retry_interval_seconds: float = 2.0

    # On-chain verification
    verification_timeout_seconds: float = 10.0
    verification_retry_attempts: int = 2

    # Marketplace economics (basis points, 250 = 2.5%)
    platform_fee_bps: int = 250

    # Read path pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Database configuration
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "nft_marketplace"
    db_user: str = "postgres"
    db_password: str  # Required, no default
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # Application settings
    log_level: str = "INFO"
    app_version: str = "0.1.0"
    environment: str = "development"

    # Valid log levels
    VALID_LOG_LEVELS: ClassVar[set[str]] = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        v_upper = v.upper()
        if v_upper not in cls.VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {v}. Must be one of {', '.join(cls.VALID_LOG_LEVELS)}"
            )
        return v_upper

    @field_validator("marketplace_address")
    @classmethod
    def validate_marketplace_address(cls, v: str) -> str:
        """Validate and lowercase the marketplace contract address."""
        if not _ADDRESS_RE.match(v):
            raise ConfigError(f"Invalid marketplace address: {v}")
        return v.lower()

    @field_validator("rpc_http_url")
    @classmethod
    def validate_rpc_http_url(cls, v: str) -> str:
        """Validate HTTP RPC endpoint scheme."""
        if not v.startswith(("http://", "https://")):
            raise ConfigError(f"RPC HTTP URL must use http(s), got {v}")
        return v

    @field_validator("rpc_ws_url")
    @classmethod
    def validate_rpc_ws_url(cls, v: str) -> str:
        """Validate WebSocket RPC endpoint scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ConfigError(f"RPC WebSocket URL must use ws(s), got {v}")
        return v

    @field_validator("start_block", "block_confirmations")
    @classmethod
    def validate_non_negative_block(cls, v: int) -> int:
        """Validate block offsets are not negative."""
        if v < 0:
            raise ConfigError(f"Block value must be non-negative, got {v}")
        return v

    @field_validator("sync_batch_size")
    @classmethod
    def validate_sync_batch_size(cls, v: int) -> int:
        """Validate historical log batch size (1-10000 blocks)."""
        if not 1 <= v <= 10000:
            raise ConfigError(f"Sync batch size must be between 1 and 10000, got {v}")
        return v

    @field_validator("max_retry_attempts", "verification_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate retry attempt counts (0-20)."""
        if not 0 <= v <= 20:
            raise ConfigError(f"Retry attempts must be between 0 and 20, got {v}")
        return v

    @field_validator(
        "reconnect_delay_seconds",
        "retry_interval_seconds",
        "verification_timeout_seconds",
        "rpc_request_timeout_seconds",
    )
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        """Validate timing values are positive."""
        if v <= 0:
            raise ConfigError(f"Interval must be positive, got {v}")
        return v

    @field_validator("catchup_interval_seconds")
    @classmethod
    def validate_catchup_interval(cls, v: int) -> int:
        """Validate catch-up interval (5-3600 seconds)."""
        if not 5 <= v <= 3600:
            raise ConfigError(f"Catch-up interval must be between 5 and 3600 seconds, got {v}")
        return v

    @field_validator("platform_fee_bps")
    @classmethod
    def validate_platform_fee(cls, v: int) -> int:
        """Validate platform fee (0-1000 basis points, at most 10%)."""
        if not 0 <= v <= 1000:
            raise ConfigError(f"Platform fee must be between 0 and 1000 bps, got {v}")
        return v

    @field_validator("queue_max_size", "default_page_size", "max_page_size")
    @classmethod
    def validate_positive_size(cls, v: int) -> int:
        """Validate sizes are at least 1."""
        if v < 1:
            raise ConfigError(f"Size must be at least 1, got {v}")
        return v

    @property
    def dsn_summary(self) -> str:
        """Database location without credentials, for logging.

        Returns:
            host:port/name string
        """
        return f"{self.db_host}:{self.db_port}/{self.db_name}"


def get_settings() -> Settings:
    """Get or create the global Settings instance (cached singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings
