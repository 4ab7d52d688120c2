"""
Realtime Module

Typed push events and the redis pub/sub transport.
"""

from .events import ChangeEvent, ChangeOperation
from .transport import (
    PushConnection,
    PushTransport,
    RedisPushConnection,
    RedisPushTransport,
    channel_name,
    decode_event,
)

__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "PushConnection",
    "PushTransport",
    "RedisPushConnection",
    "RedisPushTransport",
    "channel_name",
    "decode_event",
]
