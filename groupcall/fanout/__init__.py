"""
Fan-out module: Publish-by-token delivery of session events.
"""

from groupcall.fanout.channel import (
    DeliveryReport,
    FanoutChannel,
    FanoutMessage,
    InMemoryFanoutChannel,
)
from groupcall.fanout.redis_channel import RedisFanoutChannel

__all__ = [
    "DeliveryReport",
    "FanoutChannel",
    "FanoutMessage",
    "InMemoryFanoutChannel",
    "RedisFanoutChannel",
]
