"""
Shared fixtures: deterministic clock, no-op sleep, seeded randomness
and a coordinator wired to the in-memory backends.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from groupcall.core.config import CoordinatorConfig, ReaperConfig, RetryConfig
from groupcall.fanout.channel import InMemoryFanoutChannel
from groupcall.session.coordinator import SessionCoordinator
from groupcall.storage.memory import InMemoryMembershipProvider, InMemorySessionStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingSleep:
    """Sleep stand-in that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def assert_ok(result: Any, message: str = "Expected Ok result") -> Any:
    if result.is_err():
        raise AssertionError(f"{message}: {result.error}")
    return result.unwrap()


def assert_err(result: Any, message: str = "Expected Err result") -> Any:
    if result.is_ok():
        raise AssertionError(f"{message}: got Ok({result.unwrap()!r})")
    return result.error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def membership() -> InMemoryMembershipProvider:
    return InMemoryMembershipProvider({
        "R42": ["U1", "U2", "U3"],
        "R7": ["U1", "U4"],
        "SOLO": ["U1"],
    })


@pytest.fixture
def channel() -> InMemoryFanoutChannel:
    return InMemoryFanoutChannel()


@pytest.fixture
def make_coordinator(
    store: InMemorySessionStore,
    membership: InMemoryMembershipProvider,
    channel: InMemoryFanoutChannel,
    clock: FakeClock,
    sleep: RecordingSleep,
    rng: random.Random,
) -> Callable[..., SessionCoordinator]:
    def factory(
        max_attempts: int = 3,
        ring_timeout_seconds: int = 300,
        store_override: Optional[Any] = None,
        fanout_override: Optional[Any] = None,
    ) -> SessionCoordinator:
        config = CoordinatorConfig(
            retry=RetryConfig(max_attempts=max_attempts),
            reaper=ReaperConfig(ring_timeout_seconds=ring_timeout_seconds),
        )
        return SessionCoordinator(
            store_override if store_override is not None else store,
            membership,
            fanout_override if fanout_override is not None else channel,
            config=config,
            clock=clock,
            sleep=sleep,
            rng=rng,
        )
    return factory


@pytest.fixture
def coordinator(make_coordinator: Callable[..., SessionCoordinator]) -> SessionCoordinator:
    return make_coordinator()
