"""
Fan-out Channel: Publish-by-Token Event Delivery

The coordinator never enumerates live connections. It publishes a
named event with a JSON-safe payload to a channel token:

    user:<user_id>          personal channel of one user
    group-call-<uuid4>      call room channel of one session

and learns how many receivers took it (DeliveryReport.receivers).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from groupcall.core.errors import FanoutError
from groupcall.core.types import Result, Ok, Err, Timestamp


@dataclass(frozen=True, slots=True)
class DeliveryReport:
    """Publish accepted by the transport; receivers may be 0."""
    channel_token: str
    receivers: int

    @property
    def delivered(self) -> bool:
        return self.receivers > 0


@dataclass(frozen=True, slots=True)
class FanoutMessage:
    """Envelope carried on every channel."""
    event: str
    data: dict[str, Any]
    published_at: Timestamp = field(default_factory=Timestamp.now)

    def to_json(self) -> str:
        return json.dumps({"event": self.event, "data": self.data}, default=str)

    @classmethod
    def from_json(cls, raw: str) -> FanoutMessage:
        decoded = json.loads(raw)
        return cls(event=decoded["event"], data=decoded.get("data", {}))


@runtime_checkable
class FanoutChannel(Protocol):
    async def publish(
        self,
        channel_token: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> Result[DeliveryReport, FanoutError]:
        ...


class InMemoryFanoutChannel:
    """
    Process-local fan-out with subscriber queues.

    Every publish is also appended to a log for inspection. Tokens in
    failing_tokens reject publishes, to exercise partial failure.

    Example:
        channel = InMemoryFanoutChannel()
        inbox = channel.subscribe("user:u2")
        await channel.publish("user:u2", "groupCallInitiated", {...})
        message = inbox.get_nowait()
    """

    __slots__ = ("_subscribers", "_published", "_failing", "_lock")

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[FanoutMessage]]] = {}
        self._published: list[tuple[str, FanoutMessage]] = []
        self._failing: set[str] = set()
        self._lock = asyncio.Lock()

    def subscribe(self, channel_token: str) -> asyncio.Queue[FanoutMessage]:
        queue: asyncio.Queue[FanoutMessage] = asyncio.Queue()
        self._subscribers.setdefault(channel_token, []).append(queue)
        return queue

    def unsubscribe(self, channel_token: str, queue: asyncio.Queue[FanoutMessage]) -> None:
        queues = self._subscribers.get(channel_token, [])
        if queue in queues:
            queues.remove(queue)

    def fail_on(self, *channel_tokens: str) -> None:
        self._failing.update(channel_tokens)

    def heal(self, *channel_tokens: str) -> None:
        if channel_tokens:
            self._failing.difference_update(channel_tokens)
        else:
            self._failing.clear()

    async def publish(
        self,
        channel_token: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> Result[DeliveryReport, FanoutError]:
        if channel_token in self._failing:
            return Err(FanoutError.publish_failed(
                channel_token, event_name, ConnectionError("channel unavailable"),
            ))
        # Round-trip through JSON so payloads are known to be wire-safe
        message = FanoutMessage.from_json(FanoutMessage(event_name, payload).to_json())
        async with self._lock:
            self._published.append((channel_token, message))
            queues = list(self._subscribers.get(channel_token, ()))
        for queue in queues:
            queue.put_nowait(message)
        return Ok(DeliveryReport(channel_token=channel_token, receivers=len(queues)))

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def published(self) -> list[tuple[str, FanoutMessage]]:
        return list(self._published)

    def events_for(self, channel_token: str) -> list[FanoutMessage]:
        return [m for token, m in self._published if token == channel_token]

    def event_names(self, channel_token: Optional[str] = None) -> list[str]:
        return [
            m.event for token, m in self._published
            if channel_token is None or token == channel_token
        ]

    def clear(self) -> None:
        self._published.clear()
