"""
Session State Machine: Pure Group-Call Lifecycle Transitions

States:
    RINGING → Created; initiator connected, invitees being notified
    ACTIVE  → At least two participants connected
    ENDED   → Final state, session immutable

Transitions:
    (none)  → RINGING : Initiate
    RINGING → ACTIVE  : Join bringing the connected set to >= 2
    RINGING → ENDED   : Last connected participant leaves, or Reap
    ACTIVE  → ENDED   : Last connected participant leaves, or Reap

Design:
    - apply() is a pure function of (session, event, now)
    - Every result is a new CallSession; the input is never edited
    - Idempotent repeats return changed=False so callers skip the write
    - Version numbers are stamped by the store, not here
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Sequence, Union

from groupcall.core.errors import LifecycleError
from groupcall.core.types import Result, Ok, Err
from groupcall.session.model import (
    AbandonReason,
    CallSession,
    CallStatus,
    CallType,
    ParticipantEntry,
    ParticipantStatus,
)


# =============================================================================
# EVENTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Initiate:
    """Create a new session. Identifiers are minted by the caller."""
    room_id: str
    initiator_id: str
    participant_ids: Sequence[str]
    call_type: CallType
    session_id: str
    call_room_id: str


@dataclass(frozen=True, slots=True)
class Join:
    session_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class Leave:
    session_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class Decline:
    session_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class Reap:
    session_id: str
    reason: AbandonReason


SessionEvent = Union[Initiate, Join, Leave, Decline, Reap]


# Session-level status changes apply() may produce
VALID_STATUS_TRANSITIONS: frozenset[tuple[CallStatus, CallStatus]] = frozenset({
    (CallStatus.RINGING, CallStatus.ACTIVE),
    (CallStatus.RINGING, CallStatus.ENDED),
    (CallStatus.ACTIVE, CallStatus.ENDED),
})


# =============================================================================
# TRANSITION RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class Transition:
    """
    Outcome of applying one event.

    Attributes:
        session: Next snapshot (identical to the input when unchanged).
        outcome: Short name of what happened, e.g. "joined", "already_left".
        changed: False for idempotent no-ops; no write is needed.
        ended: True when this transition terminated the session.
        previous: Snapshot the event was applied to (None for Initiate).
    """
    session: CallSession
    outcome: str
    changed: bool = True
    ended: bool = False
    previous: Optional[CallSession] = None

    @classmethod
    def unchanged(cls, session: CallSession, outcome: str) -> Transition:
        return cls(session=session, outcome=outcome, changed=False, previous=session)

    @property
    def status_changed(self) -> bool:
        return self.previous is None or self.previous.status is not self.session.status


# =============================================================================
# TERMINATION
# =============================================================================
def terminate(session: CallSession, now: datetime) -> CallSession:
    """
    End a session.

    Invited participants become MISSED; connected participants are
    stamped with left_at = ended_at; the active set is emptied.
    """
    participants: dict[str, ParticipantEntry] = {}
    for uid, entry in session.participants.items():
        if entry.status is ParticipantStatus.INVITED:
            entry = replace(entry, status=ParticipantStatus.MISSED)
        elif entry.status is ParticipantStatus.JOINED and entry.left_at is None:
            entry = replace(entry, left_at=now)
        participants[uid] = entry

    elapsed = (now - session.started_at).total_seconds()
    return replace(
        session,
        status=CallStatus.ENDED,
        participants=participants,
        active_participant_ids=(),
        ended_at=now,
        duration_seconds=max(0, math.floor(elapsed)),
    )


# =============================================================================
# STATE MACHINE
# =============================================================================
class SessionStateMachine:
    """
    Pure transition function for CallSession.

    Usage:
        fsm = SessionStateMachine()
        result = fsm.apply(session, Join(session.id, "u2"), utc_now())
        if result.is_ok() and result.value.changed:
            await store.conditional_save(result.value.session, session.version)
    """

    __slots__ = ()

    def apply(
        self,
        session: Optional[CallSession],
        event: SessionEvent,
        now: datetime,
    ) -> Result[Transition, LifecycleError]:
        """
        Apply one event to the current snapshot.

        Returns:
            Ok(Transition) with the next snapshot
            Err(LifecycleError) when the event is illegal for this snapshot
        """
        if isinstance(event, Initiate):
            return self._initiate(session, event, now)
        if isinstance(event, Join):
            return self._join(session, event, now)
        if isinstance(event, Leave):
            return self._leave(session, event, now)
        if isinstance(event, Decline):
            return self._decline(session, event)
        if isinstance(event, Reap):
            return self._reap(session, event, now)
        return Err(LifecycleError.invalid_request("event", f"unknown event {type(event).__name__}"))

    # -------------------------------------------------------------------------
    # HANDLERS
    # -------------------------------------------------------------------------

    def _initiate(
        self,
        session: Optional[CallSession],
        event: Initiate,
        now: datetime,
    ) -> Result[Transition, LifecycleError]:
        if session is not None and session.is_live:
            return Err(LifecycleError.conflict(event.room_id, session.id))
        if not event.initiator_id:
            return Err(LifecycleError.invalid_request("initiator_id", "must not be empty"))
        if not event.participant_ids:
            return Err(LifecycleError.invalid_request("participant_ids", "must not be empty"))
        if any(not uid for uid in event.participant_ids):
            return Err(LifecycleError.invalid_request("participant_ids", "contains a blank id"))

        participants: dict[str, ParticipantEntry] = {
            event.initiator_id: ParticipantEntry(
                user_id=event.initiator_id,
                status=ParticipantStatus.JOINED,
                joined_at=now,
            ),
        }
        for uid in event.participant_ids:
            if uid not in participants:
                participants[uid] = ParticipantEntry(user_id=uid)

        created = CallSession(
            id=event.session_id,
            room_id=event.room_id,
            call_room_id=event.call_room_id,
            initiator_id=event.initiator_id,
            call_type=event.call_type,
            status=CallStatus.RINGING,
            started_at=now,
            participants=participants,
            active_participant_ids=(event.initiator_id,),
        )
        return Ok(Transition(session=created, outcome="initiated"))

    def _join(
        self,
        session: Optional[CallSession],
        event: Join,
        now: datetime,
    ) -> Result[Transition, LifecycleError]:
        checked = _check_mutable(session, event.session_id, event.user_id)
        if checked.is_err():
            return checked
        session, entry = checked.value

        if entry.is_connected:
            return Ok(Transition.unchanged(session, "already_joined"))

        joined = replace(entry, status=ParticipantStatus.JOINED, joined_at=now, left_at=None)
        nxt = session.with_participant(joined)
        active = _add(session.active_participant_ids, event.user_id)
        status = session.status
        if status is CallStatus.RINGING and len(active) >= 2:
            status = CallStatus.ACTIVE
        nxt = replace(nxt, active_participant_ids=active, status=status)
        return Ok(Transition(session=nxt, outcome="joined", previous=session))

    def _leave(
        self,
        session: Optional[CallSession],
        event: Leave,
        now: datetime,
    ) -> Result[Transition, LifecycleError]:
        checked = _check_mutable(session, event.session_id, event.user_id)
        if checked.is_err():
            return checked
        session, entry = checked.value

        if entry.status is ParticipantStatus.LEFT:
            return Ok(Transition.unchanged(session, "already_left"))

        left = replace(entry, status=ParticipantStatus.LEFT, left_at=now)
        nxt = session.with_participant(left)
        active = tuple(uid for uid in session.active_participant_ids if uid != event.user_id)
        nxt = replace(nxt, active_participant_ids=active)
        if not active:
            return Ok(Transition(
                session=terminate(nxt, now),
                outcome="ended",
                ended=True,
                previous=session,
            ))
        return Ok(Transition(session=nxt, outcome="left", previous=session))

    def _decline(
        self,
        session: Optional[CallSession],
        event: Decline,
    ) -> Result[Transition, LifecycleError]:
        checked = _check_mutable(session, event.session_id, event.user_id)
        if checked.is_err():
            return checked
        session, entry = checked.value

        if entry.status is ParticipantStatus.DECLINED:
            return Ok(Transition.unchanged(session, "already_declined"))
        if entry.is_connected:
            return Err(LifecycleError.invalid_request(
                "user_id", "connected participants must leave instead of declining",
            ))

        declined = replace(entry, status=ParticipantStatus.DECLINED)
        return Ok(Transition(
            session=session.with_participant(declined),
            outcome="declined",
            previous=session,
        ))

    def _reap(
        self,
        session: Optional[CallSession],
        event: Reap,
        now: datetime,
    ) -> Result[Transition, LifecycleError]:
        if session is None:
            return Err(LifecycleError.not_found(event.session_id))
        if session.is_terminal:
            return Err(LifecycleError.session_terminal(session.id))
        return Ok(Transition(
            session=terminate(session, now),
            outcome=f"reaped:{event.reason.value}",
            ended=True,
            previous=session,
        ))


# =============================================================================
# HELPERS
# =============================================================================
def _check_mutable(
    session: Optional[CallSession],
    session_id: str,
    user_id: str,
) -> Result[tuple[CallSession, ParticipantEntry], LifecycleError]:
    """Common guards for participant-level events."""
    if session is None:
        return Err(LifecycleError.not_found(session_id))
    if session.is_terminal:
        return Err(LifecycleError.session_terminal(session.id))
    entry = session.participant(user_id)
    if entry is None:
        return Err(LifecycleError.not_a_participant(session.id, user_id))
    return Ok((session, entry))


def _add(ids: tuple[str, ...], user_id: str) -> tuple[str, ...]:
    return ids if user_id in ids else ids + (user_id,)
