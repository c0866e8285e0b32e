"""
Error Hierarchy for the Group-Call Coordinator

Design Principles:
- Errors travel inside Err(...) rather than being raised for control flow
- Every error carries a stable code and a coarse category
- Never swallow errors or use null for absence
- Carry full error context for debugging and audit trails

Categories are what callers branch on (and what the HTTP layer maps
to status codes); codes are what operators grep for.

Usage:
    result = await coordinator.join(session_id, user_id)
    if result.is_err():
        error = result.error
        if error.category is ErrorCategory.CONTENTION:
            schedule_retry()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from groupcall.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Session lifecycle errors
    - 2xxx: Storage errors
    - 3xxx: Fan-out errors
    - 6xxx: Reliability errors
    - 9xxx: Internal errors
    """

    # Lifecycle errors (1xxx)
    SESSION_NOT_FOUND = 1001
    ROOM_NOT_FOUND = 1002
    FORBIDDEN = 1003
    NOT_A_PARTICIPANT = 1004
    INVALID_REQUEST = 1005
    SESSION_CONFLICT = 1006
    SESSION_TERMINAL = 1007

    # Storage errors (2xxx)
    STORAGE_CONNECTION_FAILED = 2001
    STORAGE_TIMEOUT = 2002
    STORAGE_VERSION_CONFLICT = 2003
    STORAGE_ROOM_CONFLICT = 2004
    STORAGE_CORRUPT_RECORD = 2005
    STORAGE_BACKEND_ERROR = 2006

    # Fan-out errors (3xxx)
    FANOUT_PUBLISH_FAILED = 3001
    FANOUT_NOT_CONNECTED = 3002

    # Reliability errors (6xxx)
    RELIABILITY_CONTENTION = 6001

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


class ErrorCategory(Enum):
    """Caller-facing error taxonomy."""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    CONFLICT = "conflict"
    CONTENTION = "contention"
    STORAGE = "storage"
    DELIVERY = "delivery"
    INTERNAL = "internal"


_CATEGORY_BY_CODE: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.SESSION_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.ROOM_NOT_FOUND: ErrorCategory.NOT_FOUND,
    # Ended sessions reject mutation the same way a missing one does.
    ErrorCode.SESSION_TERMINAL: ErrorCategory.NOT_FOUND,
    ErrorCode.FORBIDDEN: ErrorCategory.FORBIDDEN,
    ErrorCode.NOT_A_PARTICIPANT: ErrorCategory.FORBIDDEN,
    ErrorCode.INVALID_REQUEST: ErrorCategory.INVALID_REQUEST,
    ErrorCode.SESSION_CONFLICT: ErrorCategory.CONFLICT,
    ErrorCode.STORAGE_VERSION_CONFLICT: ErrorCategory.CONFLICT,
    ErrorCode.STORAGE_ROOM_CONFLICT: ErrorCategory.CONFLICT,
    ErrorCode.RELIABILITY_CONTENTION: ErrorCategory.CONTENTION,
    ErrorCode.FANOUT_PUBLISH_FAILED: ErrorCategory.DELIVERY,
    ErrorCode.FANOUT_NOT_CONNECTED: ErrorCategory.DELIVERY,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.INTERNAL,
    ErrorCode.INTERNAL_CONFIGURATION_ERROR: ErrorCategory.INTERNAL,
}


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class CallMeshError(Exception):
    """
    Base class for all coordinator errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp for correlation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY_BY_CODE.get(self.code, ErrorCategory.STORAGE)

    @property
    def is_conflict(self) -> bool:
        """True for write/write races that a reload may resolve."""
        return self.code in (
            ErrorCode.STORAGE_VERSION_CONFLICT,
            ErrorCode.STORAGE_ROOM_CONFLICT,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize error to dictionary for logging/API responses.

        Note: Excludes cause stack trace to avoid leaking
        implementation details.
        """
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# LIFECYCLE ERRORS (STATE MACHINE / COORDINATOR)
# =============================================================================
@dataclass
class LifecycleError(CallMeshError):
    """
    Errors surfaced to callers of the lifecycle operations.

    Covers missing sessions and rooms, authorization failures,
    malformed input and illegal transitions.
    """

    @classmethod
    def not_found(cls, session_id: str) -> LifecycleError:
        return cls(
            code=ErrorCode.SESSION_NOT_FOUND,
            message=f"Group call '{session_id}' not found",
            context={"session_id": session_id},
        )

    @classmethod
    def room_not_found(cls, room_id: str) -> LifecycleError:
        return cls(
            code=ErrorCode.ROOM_NOT_FOUND,
            message=f"Room '{room_id}' not found",
            context={"room_id": room_id},
        )

    @classmethod
    def forbidden(cls, user_id: str, resource: str, reason: str) -> LifecycleError:
        """Caller lacks standing on the room or session."""
        return cls(
            code=ErrorCode.FORBIDDEN,
            message=f"User '{user_id}' is not allowed on {resource}: {reason}",
            context={"user_id": user_id, "resource": resource, "reason": reason},
        )

    @classmethod
    def not_a_participant(cls, session_id: str, user_id: str) -> LifecycleError:
        return cls(
            code=ErrorCode.NOT_A_PARTICIPANT,
            message=f"User '{user_id}' is not a participant of call '{session_id}'",
            context={"session_id": session_id, "user_id": user_id},
        )

    @classmethod
    def invalid_request(cls, field_name: str, reason: str) -> LifecycleError:
        return cls(
            code=ErrorCode.INVALID_REQUEST,
            message=f"Invalid request field '{field_name}': {reason}",
            context={"field": field_name, "reason": reason},
        )

    @classmethod
    def conflict(cls, room_id: str, existing_session_id: str) -> LifecycleError:
        """A live session already exists for the room."""
        return cls(
            code=ErrorCode.SESSION_CONFLICT,
            message=f"Room '{room_id}' already has live call '{existing_session_id}'",
            context={"room_id": room_id, "existing_session_id": existing_session_id},
        )

    @classmethod
    def session_terminal(cls, session_id: str) -> LifecycleError:
        return cls(
            code=ErrorCode.SESSION_TERMINAL,
            message=f"Group call '{session_id}' has ended",
            context={"session_id": session_id},
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass
class StorageError(CallMeshError):
    """
    Errors from SessionStore backends.

    Version and room conflicts are retryable races; everything
    else propagates to the caller unchanged.
    """

    @classmethod
    def connection_failed(
        cls,
        backend: str,
        target: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            message=f"Failed to connect to {backend} at {target}",
            cause=cause,
            context={"backend": backend, "target": target},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        duration_ms: int,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_TIMEOUT,
            message=f"Operation '{operation}' timed out after {duration_ms}ms",
            cause=cause,
            context={"operation": operation, "duration_ms": duration_ms},
        )

    @classmethod
    def version_conflict(
        cls,
        session_id: str,
        expected_version: int,
        actual_version: Optional[int],
    ) -> StorageError:
        """Conditional write rejected: stored version moved on."""
        return cls(
            code=ErrorCode.STORAGE_VERSION_CONFLICT,
            message=(
                f"Version conflict on '{session_id}': expected v{expected_version}, "
                f"found v{actual_version}"
            ),
            context={
                "session_id": session_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )

    @classmethod
    def room_conflict(cls, room_id: str, holder_session_id: Optional[str]) -> StorageError:
        """Create rejected: another live session holds the room."""
        return cls(
            code=ErrorCode.STORAGE_ROOM_CONFLICT,
            message=f"Room '{room_id}' is held by live call '{holder_session_id}'",
            context={"room_id": room_id, "holder_session_id": holder_session_id},
        )

    @classmethod
    def corrupt_record(
        cls,
        key: str,
        reason: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_CORRUPT_RECORD,
            message=f"Stored record '{key}' could not be decoded: {reason}",
            cause=cause,
            context={"key": key, "reason": reason},
        )

    @classmethod
    def backend_error(
        cls,
        backend: str,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_BACKEND_ERROR,
            message=f"{backend} error during '{operation}': {cause}",
            cause=cause,
            context={"backend": backend, "operation": operation},
        )


# =============================================================================
# FAN-OUT ERRORS
# =============================================================================
@dataclass
class FanoutError(CallMeshError):
    """Publish failures. Recovered locally, never fail a lifecycle op."""

    @classmethod
    def publish_failed(
        cls,
        channel_token: str,
        event_name: str,
        cause: Optional[Exception] = None,
    ) -> FanoutError:
        return cls(
            code=ErrorCode.FANOUT_PUBLISH_FAILED,
            message=f"Publishing '{event_name}' to '{channel_token}' failed: {cause}",
            cause=cause,
            context={"channel": channel_token, "event": event_name},
        )

    @classmethod
    def not_connected(cls, backend: str) -> FanoutError:
        return cls(
            code=ErrorCode.FANOUT_NOT_CONNECTED,
            message=f"Fan-out backend '{backend}' is not connected",
            context={"backend": backend},
        )


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(CallMeshError):
    """Errors from the retry subsystem."""

    @classmethod
    def contention(
        cls,
        operation: str,
        attempts: int,
        last_error: Optional[CallMeshError] = None,
    ) -> ReliabilityError:
        """Conditional-write retry budget exhausted."""
        return cls(
            code=ErrorCode.RELIABILITY_CONTENTION,
            message=f"'{operation}' lost {attempts} consecutive write races",
            cause=last_error,
            context={
                "operation": operation,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
        )


@dataclass
class ConfigurationError(CallMeshError):
    """Invalid or unusable configuration."""

    @classmethod
    def invalid(cls, setting: str, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Invalid setting '{setting}': {reason}",
            context={"setting": setting, "reason": reason},
        )
