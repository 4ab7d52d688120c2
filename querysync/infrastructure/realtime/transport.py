"""
Push Transport

Event-channel abstraction the SubscriptionManager multiplexes over, and its
redis pub/sub implementation.

    transport.open_channel("users", "org1")  -> PushConnection
    await connection.next_event(timeout=1.0) -> ChangeEvent | None
    await connection.close()

Channel names: ``{prefix}:{category}:{scope}``.

Payloads are orjson-encoded ChangeEvent dicts. A malformed payload is
logged and skipped; it never tears down the channel.
"""

from typing import Protocol, runtime_checkable

import orjson
import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from querysync.core.config.constants import Stage
from querysync.core.exceptions import ChannelConnectionError
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.realtime.events import ChangeEvent

logger = get_logger(__name__)


@runtime_checkable
class PushConnection(Protocol):
    """One open push channel."""

    channel_id: str

    async def next_event(self, timeout: float) -> ChangeEvent | None:
        """Next event, or None when nothing arrived within ``timeout`` seconds."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class PushTransport(Protocol):
    """Factory for push channels."""

    async def open_channel(self, category: str, scope: str) -> PushConnection:
        """Open the channel for (category, scope); raises ChannelConnectionError."""
        ...


def channel_name(prefix: str, category: str, scope: str) -> str:
    return f"{prefix}:{category}:{scope}"


def decode_event(payload: bytes | str, category: str, scope: str) -> ChangeEvent | None:
    """Decode a pub/sub payload, filling category / scope from the channel."""
    try:
        body = orjson.loads(payload)
        if not isinstance(body, dict):
            raise ValueError("payload is not an object")
        body.setdefault("category", category)
        body.setdefault("scope", scope)
        return ChangeEvent.model_validate(body)
    except (orjson.JSONDecodeError, ValidationError, ValueError) as e:
        log_stage(
            logger,
            Stage.PUSH_SUBSCRIPTION,
            "Dropping malformed push payload",
            level="warning",
            category=category,
            scope=scope,
            error=str(e)[:200],
        )
        return None


class RedisPushConnection:
    """
    Redis pub/sub subscription for one channel.

    Responsibility:
        Provides next_event() over the subscription.
        Handles unsubscribe / cleanup.
    """

    def __init__(self, pubsub, channel_id: str, category: str, scope: str):
        self._pubsub = pubsub
        self.channel_id = channel_id
        self.category = category
        self.scope = scope
        self._closed = False

    async def next_event(self, timeout: float) -> ChangeEvent | None:
        if self._closed:
            raise ChannelConnectionError("Channel is closed", details={"channel": self.channel_id})
        try:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except (RedisError, OSError) as e:
            raise ChannelConnectionError.from_exception(e, channel=self.channel_id) from e

        if not message or message.get("type") != "message":
            return None
        return decode_event(message["data"], self.category, self.scope)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel_id)
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            log_stage(
                logger,
                Stage.PUSH_SUBSCRIPTION,
                "Error closing push channel",
                level="warning",
                channel=self.channel_id,
                error=str(e),
            )
        log_stage(logger, Stage.PUSH_SUBSCRIPTION, "Push channel closed", channel=self.channel_id)


class RedisPushTransport:
    """
    PushTransport over redis.asyncio pub/sub.

    Usage:
        transport = RedisPushTransport.from_url("redis://localhost:6379/0")
        connection = await transport.open_channel("users", "org1")
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "realtime", owns_client: bool = False):
        self._redis = client
        self.prefix = prefix
        self._owns_client = owns_client

    @classmethod
    def from_url(cls, url: str, prefix: str = "realtime") -> "RedisPushTransport":
        return cls(aioredis.Redis.from_url(url), prefix=prefix, owns_client=True)

    async def open_channel(self, category: str, scope: str) -> RedisPushConnection:
        name = channel_name(self.prefix, category, scope)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(name)
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise ChannelConnectionError.from_exception(
                e, message=f"Cannot subscribe to push channel {name}", channel=name
            ) from e

        log_stage(logger, Stage.PUSH_SUBSCRIPTION, "Subscribed to push channel", channel=name)
        return RedisPushConnection(pubsub, name, category, scope)

    async def publish(self, event: ChangeEvent) -> int:
        """Publish an event on its channel (backend side / tooling)."""
        name = channel_name(self.prefix, event.category, event.scope or "")
        return await self._redis.publish(name, orjson.dumps(event.model_dump(mode="json")))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._redis.aclose()
