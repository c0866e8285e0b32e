"""
Core Type Definitions for the Group-Call Coordinator

Implements Result/Either monads for zero-exception control flow,
plus the small time and identity helpers shared by every subsystem.

Design Principles:
- Never use null for absence of a *result* (use Result)
- Keep time an explicit input so state transitions stay pure
- Identifiers are opaque strings minted in one place
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    TypeVar,
    Union,
)
from uuid import uuid4

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type


# =============================================================================
# RESULT MONAD: ZERO-EXCEPTION CONTROL FLOW
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries full error context for exhaustive handling.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    High-precision timestamp stamped on errors and fan-out messages.

    Session lifecycle times are wall-clock datetimes (see utc_now);
    Timestamp is for diagnostics only.
    """

    nanos: int

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


# =============================================================================
# CLOCK AND IDENTIFIERS
# =============================================================================
Clock = Callable[[], datetime]

CALL_ROOM_PREFIX = "group-call-"


def utc_now() -> datetime:
    """Timezone-aware current time. Default Clock."""
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    return uuid4().hex


def generate_call_room_id() -> str:
    """Transport channel token for a new call (``group-call-<uuid4>``)."""
    return f"{CALL_ROOM_PREFIX}{uuid4()}"


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string (or pass through a datetime).

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
