"""
Group-Call Session Coordinator

Coordinates the lifecycle of multi-party audio/video calls attached to
chat rooms:
- Session lifecycle: RINGING → ACTIVE → ENDED with per-participant status
- Optimistic concurrency: versioned conditional writes with bounded retry
- Abandonment reaper: reclaims live calls nobody is connected to
- Best-effort fan-out: publish-by-token notifications with delivery flags

Backends:
- In-memory (development and tests)
- Redis (Lua compare-and-set store, pub/sub fan-out)
- PostgreSQL (versioned UPDATE, partial unique index per room)

License: MIT
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from groupcall.core.types import Result, Ok, Err, Clock, utc_now
from groupcall.core.errors import (
    CallMeshError,
    ErrorCategory,
    ErrorCode,
    LifecycleError,
    StorageError,
    FanoutError,
    ReliabilityError,
)
from groupcall.core.config import CoordinatorConfig, StorageBackend

from groupcall.session.model import (
    CallSession,
    CallStatus,
    CallType,
    ParticipantEntry,
    ParticipantStatus,
)
from groupcall.session.state_machine import SessionStateMachine
from groupcall.session.reaper import AbandonmentReaper
from groupcall.session.coordinator import InitiateResult, LeaveResult, SessionCoordinator
from groupcall.reliability.retry import ConcurrencyRetryPolicy

from groupcall.storage.protocols import MembershipProvider, SessionStore
from groupcall.storage.memory import InMemoryMembershipProvider, InMemorySessionStore
from groupcall.fanout.channel import FanoutChannel, InMemoryFanoutChannel

from groupcall.service import GroupCallService, build_coordinator

__all__ = [
    "__version__",
    # Core
    "Result",
    "Ok",
    "Err",
    "Clock",
    "utc_now",
    "CallMeshError",
    "ErrorCategory",
    "ErrorCode",
    "LifecycleError",
    "StorageError",
    "FanoutError",
    "ReliabilityError",
    "CoordinatorConfig",
    "StorageBackend",
    # Session
    "CallSession",
    "CallStatus",
    "CallType",
    "ParticipantEntry",
    "ParticipantStatus",
    "SessionStateMachine",
    "AbandonmentReaper",
    "InitiateResult",
    "LeaveResult",
    "SessionCoordinator",
    "ConcurrencyRetryPolicy",
    # Storage / fan-out
    "SessionStore",
    "MembershipProvider",
    "InMemorySessionStore",
    "InMemoryMembershipProvider",
    "FanoutChannel",
    "InMemoryFanoutChannel",
    # Wiring
    "GroupCallService",
    "build_coordinator",
]
