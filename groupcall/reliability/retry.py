"""
Concurrency Retry Policy: Bounded Retries for Conditional Writes

Wraps load → apply → conditional_save and repeats it when the store
reports that another writer got there first:

- Retries only on version/room conflicts; every other error returns at once
- Linear backoff: base_delay_ms × n, capped at max_delay_ms
- Equal jitter: half the delay fixed, half random
- Default budget: 3 attempts, then ReliabilityError.contention
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from groupcall.core.config import RetryConfig
from groupcall.core.errors import CallMeshError, ReliabilityError
from groupcall.core.types import Clock, Result, Ok, Err, utc_now
from groupcall.observability.metrics import MetricsCollector
from groupcall.session.model import CallSession
from groupcall.session.state_machine import SessionEvent, SessionStateMachine, Transition
from groupcall.storage.protocols import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[], Awaitable[Result[T, CallMeshError]]]
Precondition = Callable[[Optional[CallSession]], bool]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryStats:
    """Attempt statistics for one run()."""
    attempts: int = 0
    conflicts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[CallMeshError] = None


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter: bool,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in milliseconds before attempt number attempt + 1.

    Equal jitter: d/2 + random(0, d/2), where d = min(cap, base × attempt).
    """
    delay = float(min(max_delay_ms, base_delay_ms * attempt))
    if jitter and delay > 0:
        half = delay / 2
        delay = half + (rng or random).uniform(0, half)
    return delay


class ConcurrencyRetryPolicy:
    """
    Optimistic-concurrency retry loop around a SessionStore.

    Usage:
        policy = ConcurrencyRetryPolicy(store, RetryConfig())
        result = await policy.execute(session_id, Join(session_id, "u2"))
        if result.is_ok():
            transition = result.unwrap()

    Deterministic tests inject sleep, clock and rng.
    """

    __slots__ = ("_store", "_config", "_sleep", "_clock", "_rng", "_fsm", "_metrics")

    def __init__(
        self,
        store: SessionStore,
        config: Optional[RetryConfig] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
        state_machine: Optional[SessionStateMachine] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._store = store
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._fsm = state_machine or SessionStateMachine()
        self._metrics = metrics

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def state_machine(self) -> SessionStateMachine:
        return self._fsm

    def backoff_ms(self, attempt: int) -> float:
        return calculate_backoff(
            attempt=attempt,
            base_delay_ms=self._config.base_delay_ms,
            max_delay_ms=self._config.max_delay_ms,
            jitter=self._config.jitter,
            rng=self._rng,
        )

    async def run(
        self,
        attempt: Attempt[T],
        operation: str = "write",
    ) -> Result[T, CallMeshError]:
        """
        Run attempt until it succeeds, fails with a non-conflict error,
        or the attempt budget is spent.
        """
        stats = RetryStats()
        max_attempts = max(1, self._config.max_attempts)

        for n in range(1, max_attempts + 1):
            stats.attempts = n
            result = await attempt()
            if result.is_ok():
                if stats.conflicts:
                    logger.debug(
                        "Write succeeded after conflicts",
                        extra={"operation": operation, "attempts": n, "conflicts": stats.conflicts},
                    )
                return result

            error = result.error
            if not (isinstance(error, CallMeshError) and error.is_conflict):
                return result

            stats.conflicts += 1
            stats.last_error = error
            if self._metrics is not None:
                self._metrics.conflicts.inc(operation=operation)

            if n < max_attempts:
                delay = self.backoff_ms(n)
                stats.total_delay_ms += delay
                logger.debug(
                    "Conditional write conflict, retrying",
                    extra={"operation": operation, "attempt": n, "delay_ms": round(delay, 2)},
                )
                await self._sleep(delay / 1000)

        if self._metrics is not None:
            self._metrics.contention.inc(operation=operation)
        logger.warning(
            "Retry budget exhausted",
            extra={
                "operation": operation,
                "attempts": stats.attempts,
                "total_delay_ms": round(stats.total_delay_ms, 2),
            },
        )
        return Err(ReliabilityError.contention(operation, stats.attempts, stats.last_error))

    async def execute(
        self,
        session_id: str,
        event: SessionEvent,
        precondition: Optional[Precondition] = None,
    ) -> Result[Transition, CallMeshError]:
        """
        Load the session, apply event, and write it back conditionally.

        When precondition rejects the freshly loaded snapshot the
        event is skipped and an unchanged Transition is returned.
        No-op transitions are not written.
        """
        operation = type(event).__name__.lower()

        async def attempt() -> Result[Transition, CallMeshError]:
            loaded = await self._store.get(session_id)
            if loaded.is_err():
                return loaded
            current = loaded.value

            if precondition is not None and current is not None and not precondition(current):
                return Ok(Transition.unchanged(current, "precondition_failed"))

            applied = self._fsm.apply(current, event, self._clock())
            if applied.is_err():
                return applied
            transition = applied.value
            if not transition.changed:
                return Ok(transition)

            expected = current.version if current is not None else 0
            saved = await self._store.conditional_save(transition.session, expected)
            if saved.is_err():
                return saved
            return Ok(Transition(
                session=saved.value,
                outcome=transition.outcome,
                changed=True,
                ended=transition.ended,
                previous=current,
            ))

        return await self.run(attempt, operation)
