"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the coordinator:
- Result/Either monads for zero-exception control flow
- Error hierarchy with a caller-facing category per code
- Configuration management with validation
"""

from groupcall.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    Clock,
    utc_now,
)
from groupcall.core.errors import (
    ErrorCode,
    ErrorCategory,
    CallMeshError,
    LifecycleError,
    StorageError,
    FanoutError,
    ReliabilityError,
)
from groupcall.core.config import (
    CoordinatorConfig,
    RetryConfig,
    ReaperConfig,
    FanoutConfig,
    RedisConfig,
    PostgresConfig,
    StorageBackend,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "Clock",
    "utc_now",
    "ErrorCode",
    "ErrorCategory",
    "CallMeshError",
    "LifecycleError",
    "StorageError",
    "FanoutError",
    "ReliabilityError",
    "CoordinatorConfig",
    "RetryConfig",
    "ReaperConfig",
    "FanoutConfig",
    "RedisConfig",
    "PostgresConfig",
    "StorageBackend",
]
