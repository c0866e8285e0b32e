"""
Abandonment Reaper: Reclaims Stale Live Sessions

A live session is abandoned when either predicate holds:

    has_no_active_participants  nobody is connected any more
    ring_timed_out              still RINGING after the ring timeout

Reclamation goes through the retry policy with a precondition that
re-classifies the freshly loaded snapshot, so a session that was
revived between classification and the write is left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from groupcall.core.config import ReaperConfig
from groupcall.core.errors import CallMeshError, ErrorCode
from groupcall.core.types import Clock, Result, Ok, Err, utc_now
from groupcall.observability.metrics import MetricsCollector
from groupcall.reliability.retry import ConcurrencyRetryPolicy
from groupcall.session.model import AbandonReason, CallSession, CallStatus
from groupcall.session.state_machine import Reap, Transition

logger = logging.getLogger(__name__)


# =============================================================================
# PREDICATES
# =============================================================================
def has_no_active_participants(session: CallSession) -> bool:
    return len(session.active_participant_ids) == 0


def ring_timed_out(session: CallSession, now: datetime, ring_timeout: timedelta) -> bool:
    """Still ringing and older than ring_timeout."""
    return session.status is CallStatus.RINGING and now - session.started_at > ring_timeout


# =============================================================================
# REAPER
# =============================================================================
@dataclass(frozen=True, slots=True)
class ReapOutcome:
    """
    Result of a reap attempt.

    reclaimed is True when the session is no longer live afterwards,
    whether this call ended it or someone else already had.
    """
    session: CallSession
    reclaimed: bool
    reason: Optional[AbandonReason] = None
    transition: Optional[Transition] = None


class AbandonmentReaper:
    """
    Classifies and reclaims abandoned sessions.

    Example:
        reaper = AbandonmentReaper(ReaperConfig(ring_timeout_seconds=300), policy)
        if reaper.classify(existing, now) is not None:
            outcome = await reaper.reap(existing)
    """

    __slots__ = ("_config", "_policy", "_clock", "_metrics")

    def __init__(
        self,
        config: ReaperConfig,
        policy: ConcurrencyRetryPolicy,
        clock: Clock = utc_now,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._config = config
        self._policy = policy
        self._clock = clock
        self._metrics = metrics

    @property
    def ring_timeout(self) -> timedelta:
        return timedelta(seconds=self._config.ring_timeout_seconds)

    def classify(self, session: CallSession, now: Optional[datetime] = None) -> Optional[AbandonReason]:
        """Reason the live session counts as abandoned, or None."""
        if session.is_terminal:
            return None
        now = now or self._clock()
        if has_no_active_participants(session):
            return AbandonReason.NO_ACTIVE_PARTICIPANTS
        if ring_timed_out(session, now, self.ring_timeout):
            return AbandonReason.RING_TIMEOUT
        return None

    def is_abandoned(self, session: CallSession, now: Optional[datetime] = None) -> bool:
        return self.classify(session, now) is not None

    async def reap(self, session: CallSession) -> Result[ReapOutcome, CallMeshError]:
        """
        End session if it is still abandoned when re-read from the store.
        """
        reason = self.classify(session)
        if reason is None:
            return Ok(ReapOutcome(session=session, reclaimed=False))

        def still_abandoned(current: Optional[CallSession]) -> bool:
            return current is not None and self.classify(current) is not None

        result = await self._policy.execute(
            session.id,
            Reap(session.id, reason),
            precondition=still_abandoned,
        )

        if result.is_err():
            error = result.error
            if error.code is ErrorCode.SESSION_TERMINAL:
                logger.info(
                    "Session already ended before reap",
                    extra={"session_id": session.id, "room_id": session.room_id},
                )
                return Ok(ReapOutcome(session=session, reclaimed=True, reason=reason))
            return Err(error)

        transition = result.value
        if not transition.changed and transition.session.is_terminal:
            return Ok(ReapOutcome(session=transition.session, reclaimed=True, reason=reason))
        if not transition.changed:
            logger.info(
                "Session revived before reap, leaving it live",
                extra={"session_id": session.id, "room_id": session.room_id},
            )
            return Ok(ReapOutcome(session=transition.session, reclaimed=False, transition=transition))

        if self._metrics is not None:
            self._metrics.reaped.inc(reason=reason.value)
        logger.info(
            "Reclaimed abandoned session",
            extra={
                "session_id": session.id,
                "room_id": session.room_id,
                "reason": reason.value,
                "duration_seconds": transition.session.duration_seconds,
            },
        )
        return Ok(ReapOutcome(
            session=transition.session,
            reclaimed=True,
            reason=reason,
            transition=transition,
        ))
