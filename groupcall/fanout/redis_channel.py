"""
Redis Pub/Sub Fan-out

PUBLISH returns the number of subscribers that received the message,
which becomes DeliveryReport.receivers. Gateways holding client
connections subscribe to user:<id> and group-call-<uuid> channels.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from groupcall.core.errors import FanoutError
from groupcall.core.types import Result, Ok, Err
from groupcall.fanout.channel import DeliveryReport, FanoutMessage

logger = logging.getLogger(__name__)


class RedisFanoutChannel:
    """
    FanoutChannel over Redis PUBLISH.

    Example:
        channel = RedisFanoutChannel(client)
        report = await channel.publish("user:u2", "groupCallInitiated", payload)
    """

    __slots__ = ("_client", "_channel_prefix")

    def __init__(self, client: Optional[aioredis.Redis], channel_prefix: str = "") -> None:
        self._client = client
        self._channel_prefix = channel_prefix

    def channel_name(self, channel_token: str) -> str:
        return f"{self._channel_prefix}{channel_token}"

    async def publish(
        self,
        channel_token: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> Result[DeliveryReport, FanoutError]:
        if self._client is None:
            return Err(FanoutError.not_connected("redis"))
        message = FanoutMessage(event_name, payload).to_json()
        try:
            receivers = await self._client.publish(self.channel_name(channel_token), message)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            return Err(FanoutError.publish_failed(channel_token, event_name, e))
        return Ok(DeliveryReport(channel_token=channel_token, receivers=int(receivers)))

    async def listen(self, *channel_tokens: str) -> AsyncIterator[tuple[str, FanoutMessage]]:
        """
        Subscribe and yield (channel_token, message) pairs.

        Used by connection gateways and the demo; the coordinator only publishes.
        """
        if self._client is None:
            raise RuntimeError("RedisFanoutChannel has no client")
        pubsub = self._client.pubsub()
        names = {self.channel_name(t): t for t in channel_tokens}
        await pubsub.subscribe(*names)
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    message = FanoutMessage.from_json(raw["data"])
                except (ValueError, KeyError) as e:
                    logger.warning(
                        "Dropping malformed fan-out message",
                        extra={"channel": raw.get("channel"), "error": str(e)},
                    )
                    continue
                yield names.get(raw["channel"], raw["channel"]), message
        finally:
            await pubsub.unsubscribe(*names)
            await pubsub.aclose()
