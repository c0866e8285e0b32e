"""
Session module: Call session model, lifecycle state machine,
abandonment reaper and the coordinator that ties them together.
"""

from groupcall.session.model import (
    AbandonReason,
    CallSession,
    CallStatus,
    CallType,
    ParticipantEntry,
    ParticipantStatus,
)
from groupcall.session.state_machine import (
    Decline,
    Initiate,
    Join,
    Leave,
    Reap,
    SessionStateMachine,
    Transition,
)
from groupcall.session.reaper import AbandonmentReaper
from groupcall.session.coordinator import InitiateResult, LeaveResult, SessionCoordinator

__all__ = [
    "AbandonReason",
    "CallSession",
    "CallStatus",
    "CallType",
    "ParticipantEntry",
    "ParticipantStatus",
    "Decline",
    "Initiate",
    "Join",
    "Leave",
    "Reap",
    "SessionStateMachine",
    "Transition",
    "AbandonmentReaper",
    "InitiateResult",
    "LeaveResult",
    "SessionCoordinator",
]
