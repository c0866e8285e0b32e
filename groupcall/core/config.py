"""
Configuration Management for the Group-Call Coordinator

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from groupcall.core.types import Result, Ok, Err
from groupcall.core import constants as C


class StorageBackend(Enum):
    """Session store / fan-out backend selection."""

    MEMORY = "memory"      # Development/testing only
    REDIS = "redis"        # Store + pub/sub fan-out
    POSTGRES = "postgres"  # Store; fan-out still via Redis


@dataclass(frozen=True)
class RetryConfig:
    """Conditional-write retry budget."""

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_DELAY_MS
    max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    jitter: bool = True


@dataclass(frozen=True)
class ReaperConfig:
    """Abandoned-session classification thresholds."""

    ring_timeout_seconds: int = C.RING_TIMEOUT_SECONDS


@dataclass(frozen=True)
class FanoutConfig:
    """Fan-out channel addressing."""

    user_channel_prefix: str = C.USER_CHANNEL_PREFIX

    def user_channel(self, user_id: str) -> str:
        return f"{self.user_channel_prefix}{user_id}"


@dataclass(frozen=True)
class RedisConfig:
    """
    Redis/Valkey connection configuration.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15).
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
        key_prefix: Namespace for every key this service writes.
    """

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    max_connections: int = 50
    connect_timeout_ms: int = 2000
    socket_timeout_ms: int = 5000
    ssl: bool = False
    key_prefix: str = C.REDIS_KEY_PREFIX

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")
        if self.connect_timeout_ms <= 0 or self.socket_timeout_ms <= 0:
            raise ValueError("timeouts must be > 0")

    @classmethod
    def from_env(cls, prefix: str = "GROUPCALL_REDIS") -> RedisConfig:
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST, {prefix}_PORT, {prefix}_PASSWORD, {prefix}_DB
        - {prefix}_SSL, {prefix}_MAX_CONNECTIONS, {prefix}_KEY_PREFIX
        - {prefix}_CONNECT_TIMEOUT_MS, {prefix}_SOCKET_TIMEOUT_MS
        """
        return cls(
            host=_env(prefix, "HOST", "localhost"),
            port=_env_int(prefix, "PORT", 6379),
            password=_env(prefix, "PASSWORD") or None,
            db=_env_int(prefix, "DB", 0),
            max_connections=_env_int(prefix, "MAX_CONNECTIONS", 50),
            connect_timeout_ms=_env_int(prefix, "CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_env_int(prefix, "SOCKET_TIMEOUT_MS", 5000),
            ssl=_env_bool(prefix, "SSL", False),
            key_prefix=_env(prefix, "KEY_PREFIX", C.REDIS_KEY_PREFIX),
        )

    def get_connection_kwargs(self) -> dict[str, Any]:
        """Kwargs for redis.asyncio.Redis()."""
        return {
            "host": self.host,
            "port": self.port,
            "password": self.password,
            "db": self.db,
            "ssl": self.ssl,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000,
            "socket_timeout": self.socket_timeout_ms / 1000,
            "decode_responses": True,
        }


@dataclass(frozen=True)
class PostgresConfig:
    """PostgreSQL session store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "groupcall"
    user: str = "groupcall"
    password: str = ""
    pool_min: int = C.PG_POOL_MIN
    pool_max: int = C.PG_POOL_MAX
    query_timeout_ms: int = C.PG_QUERY_TIMEOUT_MS
    sessions_table: str = C.PG_SESSIONS_TABLE
    delivery_table: str = C.PG_DELIVERY_TABLE

    @property
    def dsn(self) -> str:
        """PostgreSQL connection string."""
        return (
            f"postgresql://{self.user}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
        )

    @classmethod
    def from_env(cls, prefix: str = "GROUPCALL_PG") -> PostgresConfig:
        return cls(
            host=_env(prefix, "HOST", "localhost"),
            port=_env_int(prefix, "PORT", 5432),
            database=_env(prefix, "DATABASE", "groupcall"),
            user=_env(prefix, "USER", "groupcall"),
            password=_env(prefix, "PASSWORD", ""),
            pool_min=_env_int(prefix, "POOL_MIN", C.PG_POOL_MIN),
            pool_max=_env_int(prefix, "POOL_MAX", C.PG_POOL_MAX),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging and metrics configuration."""

    log_level: str = "INFO"
    log_json: bool = True
    metrics_enabled: bool = True


@dataclass(frozen=True)
class CoordinatorConfig:
    """Root configuration for the coordinator service."""

    backend: StorageBackend = StorageBackend.MEMORY
    retry: RetryConfig = field(default_factory=RetryConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[CoordinatorConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with GROUPCALL_.
        Example: GROUPCALL_BACKEND=redis, GROUPCALL_RING_TIMEOUT_S=120
        """
        prefix = "GROUPCALL"
        try:
            backend = StorageBackend(_env(prefix, "BACKEND", "memory").lower())

            retry = RetryConfig(
                max_attempts=_env_int(prefix, "RETRY_MAX_ATTEMPTS", C.RETRY_MAX_ATTEMPTS),
                base_delay_ms=_env_int(prefix, "RETRY_BASE_DELAY_MS", C.RETRY_BASE_DELAY_MS),
                max_delay_ms=_env_int(prefix, "RETRY_MAX_DELAY_MS", C.RETRY_MAX_DELAY_MS),
                jitter=_env_bool(prefix, "RETRY_JITTER", True),
            )

            reaper = ReaperConfig(
                ring_timeout_seconds=_env_int(prefix, "RING_TIMEOUT_S", C.RING_TIMEOUT_SECONDS),
            )

            fanout = FanoutConfig(
                user_channel_prefix=_env(prefix, "USER_CHANNEL_PREFIX", C.USER_CHANNEL_PREFIX),
            )

            observability = ObservabilityConfig(
                log_level=_env(prefix, "LOG_LEVEL", "INFO").upper(),
                log_json=_env_bool(prefix, "LOG_JSON", True),
                metrics_enabled=_env_bool(prefix, "METRICS_ENABLED", True),
            )

            return Ok(cls(
                backend=backend,
                retry=retry,
                reaper=reaper,
                fanout=fanout,
                redis=RedisConfig.from_env(),
                postgres=PostgresConfig.from_env(),
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.retry.max_attempts < 1:
            return Err("retry.max_attempts must be >= 1")
        if self.retry.base_delay_ms < 0 or self.retry.max_delay_ms < self.retry.base_delay_ms:
            return Err("retry delays must satisfy 0 <= base_delay_ms <= max_delay_ms")
        if self.reaper.ring_timeout_seconds <= 0:
            return Err("reaper.ring_timeout_seconds must be > 0")
        if self.postgres.pool_min > self.postgres.pool_max:
            return Err("postgres.pool_min cannot exceed pool_max")
        if not self.fanout.user_channel_prefix:
            return Err("fanout.user_channel_prefix must not be empty")
        return Ok(None)


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================
def _env(prefix: str, key: str, default: str = "") -> str:
    return os.environ.get(f"{prefix}_{key}", default)


def _env_int(prefix: str, key: str, default: int) -> int:
    val = _env(prefix, key)
    return int(val) if val else default


def _env_bool(prefix: str, key: str, default: bool) -> bool:
    val = _env(prefix, key).lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no"):
        return False
    return default
