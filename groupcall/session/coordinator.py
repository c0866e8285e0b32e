"""
Session Coordinator: Entry Point for Group-Call Lifecycle Requests

Request flow:
    validate → standing check → reaper (initiate only)
             → retry policy (load, apply, conditional save)
             → fan-out of the change → delivery bookkeeping

Fan-out and delivery bookkeeping are best-effort: a failed publish is
logged and leaves the notification flags False, but never fails the
lifecycle operation that triggered it.

Events published:
    groupCallInitiated   user:<id> of every participant   {call, roomId}
    participantJoined    call room channel                {callId, userId, activeParticipants}
    participantLeft      call room channel                {..., callEnded}
    participantDeclined  call room channel                {callId, userId}
    groupCallEnded       user:<id> of missed participants {callId, roomId, reason, durationSeconds}
                         and the call room channel on reap
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from groupcall.core import constants as C
from groupcall.core.config import CoordinatorConfig
from groupcall.core.errors import (
    CallMeshError,
    ErrorCategory,
    LifecycleError,
    StorageError,
)
from groupcall.core.types import (
    Clock,
    Result,
    Ok,
    Err,
    generate_call_room_id,
    generate_session_id,
    utc_now,
)
from groupcall.fanout.channel import DeliveryReport, FanoutChannel
from groupcall.observability.logging import log_context
from groupcall.observability.metrics import MetricsCollector
from groupcall.reliability.retry import ConcurrencyRetryPolicy, Sleep
from groupcall.session.model import (
    CallSession,
    CallType,
    DeliveryFlags,
    ParticipantStatus,
)
from groupcall.session.reaper import AbandonmentReaper, ReapOutcome
from groupcall.session.state_machine import (
    Decline,
    Initiate,
    Join,
    Leave,
    Transition,
)
from groupcall.storage.protocols import MembershipProvider, SessionStore

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class InitiateResult:
    """
    Outcome of initiate().

    already_active is informational: the room already had a live call
    and that call is returned instead of a new one.
    """
    session: CallSession
    already_active: bool = False
    reclaimed: Optional[CallSession] = None


@dataclass(frozen=True, slots=True)
class LeaveResult:
    session: CallSession
    call_ended: bool


# =============================================================================
# COORDINATOR
# =============================================================================
class SessionCoordinator:
    """
    Orchestrates lifecycle operations over injected collaborators.

    Usage:
        coordinator = SessionCoordinator(store, membership, fanout)
        started = await coordinator.initiate("R42", "u1")
        joined = await coordinator.join(started.unwrap().session.id, "u2")

    Holds no session state of its own; every decision is made on a
    snapshot freshly loaded from the store.
    """

    __slots__ = (
        "_store",
        "_membership",
        "_fanout",
        "_config",
        "_clock",
        "_metrics",
        "_policy",
        "_reaper",
        "_new_session_id",
        "_new_call_room_id",
    )

    def __init__(
        self,
        store: SessionStore,
        membership: MembershipProvider,
        fanout: FanoutChannel,
        config: Optional[CoordinatorConfig] = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsCollector] = None,
        session_id_factory: Callable[[], str] = generate_session_id,
        call_room_id_factory: Callable[[], str] = generate_call_room_id,
    ) -> None:
        self._store = store
        self._membership = membership
        self._fanout = fanout
        self._config = config or CoordinatorConfig()
        self._clock = clock
        self._metrics = metrics or MetricsCollector()
        self._policy = ConcurrencyRetryPolicy(
            store,
            self._config.retry,
            sleep=sleep,
            clock=clock,
            rng=rng,
            metrics=self._metrics,
        )
        self._reaper = AbandonmentReaper(
            self._config.reaper, self._policy, clock=clock, metrics=self._metrics,
        )
        self._new_session_id = session_id_factory
        self._new_call_room_id = call_room_id_factory

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def reaper(self) -> AbandonmentReaper:
        return self._reaper

    @property
    def retry_policy(self) -> ConcurrencyRetryPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # INITIATE
    # -------------------------------------------------------------------------

    async def initiate(
        self,
        room_id: str,
        initiator_id: str,
        call_type: Any = CallType.VIDEO.value,
    ) -> Result[InitiateResult, CallMeshError]:
        """
        Start a call in a room, or return the live one.

        Every room member is invited; the initiator joins immediately.
        A live session the reaper classifies as abandoned is ended first.

        Errors: INVALID_REQUEST, NOT_FOUND (room), FORBIDDEN, CONTENTION.
        """
        with log_context(room_id=room_id, user_id=initiator_id), \
                self._metrics.latency.time(operation="initiate"):
            if not room_id:
                return self._fail("initiate", LifecycleError.invalid_request("room_id", "is required"))
            if not initiator_id:
                return self._fail("initiate", LifecycleError.invalid_request("user_id", "is required"))
            kind = CallType.parse(call_type)
            if kind is None:
                return self._fail("initiate", LifecycleError.invalid_request(
                    "call_type", f"must be one of {[t.value for t in CallType]}",
                ))

            members = await self._room_members(room_id)
            if members.is_err():
                return self._fail("initiate", members.error)
            if initiator_id not in members.value:
                return self._fail("initiate", LifecycleError.forbidden(
                    initiator_id, f"room {room_id}", "not a member of the room",
                ))
            participant_ids = tuple(members.value)

            reclaimed: list[ReapOutcome] = []

            async def attempt() -> Result[InitiateResult, CallMeshError]:
                found = await self._store.find_non_terminal_by_room(room_id)
                if found.is_err():
                    return found
                existing = found.value
                if existing is not None:
                    if self._reaper.classify(existing) is None:
                        return Ok(InitiateResult(session=existing, already_active=True))
                    reaped = await self._reaper.reap(existing)
                    if reaped.is_err():
                        return reaped
                    if not reaped.value.reclaimed:
                        return Ok(InitiateResult(session=reaped.value.session, already_active=True))
                    reclaimed.append(reaped.value)

                event = Initiate(
                    room_id=room_id,
                    initiator_id=initiator_id,
                    participant_ids=participant_ids,
                    call_type=kind,
                    session_id=self._new_session_id(),
                    call_room_id=self._new_call_room_id(),
                )
                applied = self._policy.state_machine.apply(None, event, self._clock())
                if applied.is_err():
                    return applied
                saved = await self._store.conditional_save(applied.value.session, 0)
                if saved.is_err():
                    return saved
                return Ok(InitiateResult(session=saved.value))

            result = await self._policy.run(attempt, "initiate")

            for outcome in reclaimed:
                if outcome.transition is not None:
                    await self._announce_reaped(outcome)

            if result.is_err():
                return self._fail("initiate", result.error)

            started = result.value
            if started.already_active:
                logger.info(
                    "Room already has a live call",
                    extra={"session_id": started.session.id, "status": started.session.status.value},
                )
                self._metrics.operations.inc(operation="initiate", outcome="already_active")
                return Ok(started)

            session = await self._announce_initiated(started.session)
            logger.info(
                "Group call initiated",
                extra={
                    "session_id": session.id,
                    "call_type": session.call_type.value,
                    "participants": len(session.participants),
                },
            )
            self._metrics.operations.inc(operation="initiate", outcome="initiated")
            last_reclaimed = reclaimed[-1].session if reclaimed else None
            return Ok(InitiateResult(session=session, reclaimed=last_reclaimed))

    # -------------------------------------------------------------------------
    # JOIN / LEAVE / DECLINE
    # -------------------------------------------------------------------------

    async def join(self, session_id: str, user_id: str) -> Result[CallSession, CallMeshError]:
        with log_context(session_id=session_id, user_id=user_id), \
                self._metrics.latency.time(operation="join"):
            invalid = _require(session_id=session_id, user_id=user_id)
            if invalid is not None:
                return self._fail("join", invalid)

            result = await self._policy.execute(session_id, Join(session_id, user_id))
            if result.is_err():
                return self._fail("join", result.error)

            transition = result.value
            session = transition.session
            if transition.changed:
                await self._publish(session.call_room_id, C.EVENT_PARTICIPANT_JOINED, {
                    "callId": session.id,
                    "userId": user_id,
                    "activeParticipants": list(session.active_participant_ids),
                })
                logger.info(
                    "Participant joined",
                    extra={"status": session.status.value, "active": len(session.active_participant_ids)},
                )
            self._metrics.operations.inc(operation="join", outcome=transition.outcome)
            return Ok(session)

    async def leave(self, session_id: str, user_id: str) -> Result[LeaveResult, CallMeshError]:
        with log_context(session_id=session_id, user_id=user_id), \
                self._metrics.latency.time(operation="leave"):
            invalid = _require(session_id=session_id, user_id=user_id)
            if invalid is not None:
                return self._fail("leave", invalid)

            result = await self._policy.execute(session_id, Leave(session_id, user_id))
            if result.is_err():
                return self._fail("leave", result.error)

            transition = result.value
            session = transition.session
            if transition.changed:
                await self._publish(session.call_room_id, C.EVENT_PARTICIPANT_LEFT, {
                    "callId": session.id,
                    "userId": user_id,
                    "activeParticipants": list(session.active_participant_ids),
                    "callEnded": transition.ended,
                })
                if transition.ended:
                    await self._announce_missed(transition, reason="all_left")
                    logger.info(
                        "Group call ended",
                        extra={"duration_seconds": session.duration_seconds},
                    )
            self._metrics.operations.inc(operation="leave", outcome=transition.outcome)
            return Ok(LeaveResult(session=session, call_ended=session.is_terminal))

    async def decline(self, session_id: str, user_id: str) -> Result[CallSession, CallMeshError]:
        with log_context(session_id=session_id, user_id=user_id), \
                self._metrics.latency.time(operation="decline"):
            invalid = _require(session_id=session_id, user_id=user_id)
            if invalid is not None:
                return self._fail("decline", invalid)

            result = await self._policy.execute(session_id, Decline(session_id, user_id))
            if result.is_err():
                return self._fail("decline", result.error)

            transition = result.value
            session = transition.session
            if transition.changed:
                await self._publish(session.call_room_id, C.EVENT_PARTICIPANT_DECLINED, {
                    "callId": session.id,
                    "userId": user_id,
                })
            self._metrics.operations.inc(operation="decline", outcome=transition.outcome)
            return Ok(session)

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    async def get_session(self, session_id: str, user_id: str) -> Result[CallSession, CallMeshError]:
        """Session details, visible to its participants only."""
        invalid = _require(session_id=session_id, user_id=user_id)
        if invalid is not None:
            return self._fail("get", invalid)
        loaded = await self._store.get(session_id)
        if loaded.is_err():
            return self._fail("get", loaded.error)
        session = loaded.value
        if session is None:
            return self._fail("get", LifecycleError.not_found(session_id))
        if not session.has_participant(user_id):
            return self._fail("get", LifecycleError.not_a_participant(session_id, user_id))
        return Ok(session)

    async def pending(self, user_id: str) -> Result[list[CallSession], CallMeshError]:
        """Ringing calls still waiting on user_id, newest first."""
        invalid = _require(user_id=user_id)
        if invalid is not None:
            return self._fail("pending", invalid)
        listed = await self._store.list_ringing_for_participant(user_id)
        if listed.is_err():
            return self._fail("pending", listed.error)
        now = self._clock()
        live = [s for s in listed.value if self._reaper.classify(s, now) is None]
        return Ok(live[:C.MAX_PENDING_CALLS])

    # -------------------------------------------------------------------------
    # FAN-OUT
    # -------------------------------------------------------------------------

    async def _announce_initiated(self, session: CallSession) -> CallSession:
        """Notify every participant; returns the session with flags overlaid."""
        payload = {"call": session.to_dict(), "roomId": session.room_id}
        user_ids = list(session.participants)
        reports = await asyncio.gather(*(
            self._publish(self._config.fanout.user_channel(uid), C.EVENT_CALL_INITIATED, payload)
            for uid in user_ids
        ))

        flags: dict[str, DeliveryFlags] = {}
        for uid, report in zip(user_ids, reports):
            entry = DeliveryFlags(
                sent=report is not None,
                delivered=report is not None and report.receivers > 0,
            )
            flags[uid] = entry
            recorded = await self._store.record_delivery(session.id, uid, entry.sent, entry.delivered)
            if recorded.is_err():
                logger.warning(
                    "Could not record notification flags",
                    extra={"session_id": session.id, "target_user": uid, "error": str(recorded.error)},
                )
        return session.with_delivery(flags)

    async def _announce_missed(self, transition: Transition, reason: str) -> None:
        session = transition.session
        previous = transition.previous
        missed = [
            uid for uid, entry in session.participants.items()
            if entry.status is ParticipantStatus.MISSED
            and (previous is None or previous.participants[uid].status is not ParticipantStatus.MISSED)
        ]
        payload = _ended_payload(session, reason)
        await asyncio.gather(*(
            self._publish(self._config.fanout.user_channel(uid), C.EVENT_CALL_ENDED, payload)
            for uid in missed
        ))

    async def _announce_reaped(self, outcome: ReapOutcome) -> None:
        reason = outcome.reason.value if outcome.reason else "abandoned"
        session = outcome.session
        with log_context(session_id=session.id):
            await self._publish(session.call_room_id, C.EVENT_CALL_ENDED, _ended_payload(session, reason))
            if outcome.transition is not None:
                await self._announce_missed(outcome.transition, reason=reason)

    async def _publish(
        self,
        channel_token: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> Optional[DeliveryReport]:
        """Publish and log; returns the DeliveryReport or None on failure."""
        try:
            result = await self._fanout.publish(channel_token, event_name, payload)
        except Exception as e:
            logger.warning(
                "Fan-out publish raised",
                extra={"channel": channel_token, "event": event_name, "error": repr(e)},
            )
            self._metrics.fanout.inc(event=event_name, result="error")
            return None
        if result.is_err():
            logger.warning(
                "Fan-out publish failed",
                extra={"channel": channel_token, "event": event_name, "error": str(result.error)},
            )
            self._metrics.fanout.inc(event=event_name, result="failed")
            return None
        report = result.value
        self._metrics.fanout.inc(
            event=event_name,
            result="delivered" if report.receivers > 0 else "no_receivers",
        )
        return report

    # -------------------------------------------------------------------------
    # HELPERS
    # -------------------------------------------------------------------------

    async def _room_members(self, room_id: str) -> Result[Sequence[str], CallMeshError]:
        try:
            members = await self._membership.list_members(room_id)
        except Exception as e:
            return Err(StorageError.backend_error("membership", "list_members", e))
        if members is None:
            return Err(LifecycleError.room_not_found(room_id))
        return Ok(members)

    def _fail(self, operation: str, error: CallMeshError) -> Err[CallMeshError]:
        """Log at the coordinator boundary and count the failure."""
        category = error.category
        if category in (ErrorCategory.STORAGE, ErrorCategory.INTERNAL):
            logger.error(
                "Lifecycle operation failed",
                extra={"operation": operation, "error": error.to_dict()},
            )
        elif category is ErrorCategory.CONTENTION:
            logger.warning(
                "Lifecycle operation lost to contention",
                extra={"operation": operation, "error_id": error.error_id},
            )
        else:
            logger.info(
                "Lifecycle operation rejected",
                extra={"operation": operation, "code": error.code.name},
            )
        self._metrics.operations.inc(operation=operation, outcome=category.value)
        return Err(error)


def _require(**fields: str) -> Optional[LifecycleError]:
    for name, value in fields.items():
        if not value or not str(value).strip():
            return LifecycleError.invalid_request(name, "is required")
    return None


def _ended_payload(session: CallSession, reason: str) -> dict[str, Any]:
    return {
        "callId": session.id,
        "roomId": session.room_id,
        "reason": reason,
        "durationSeconds": session.duration_seconds,
    }
