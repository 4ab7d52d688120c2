"""
Unit Tests for the Push Transport

Tests ChangeEvent decoding and the redis pub/sub connection with a mocked
redis client.
"""

from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from querysync.core.exceptions import ChannelConnectionError
from querysync.infrastructure.realtime.events import ChangeEvent, ChangeOperation
from querysync.infrastructure.realtime.transport import (
    RedisPushConnection,
    RedisPushTransport,
    channel_name,
    decode_event,
)


@pytest.fixture
def pubsub():
    mock = AsyncMock()
    mock.get_message = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def redis_client(pubsub):
    client = MagicMock()
    client.pubsub = MagicMock(return_value=pubsub)
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest.mark.unit
class TestChangeEvent:
    def test_accepts_row_change_shape(self):
        event = ChangeEvent.model_validate(
            {"table": "profiles", "eventType": "update", "new": {"id": "u1"}, "old": None, "organization_id": "org1"}
        )
        assert event.category == "profiles"
        assert event.operation == ChangeOperation.UPDATE
        assert event.scope == "org1"
        assert event.old_record == {}
        assert event.row == {"id": "u1"}

    def test_delete_row_falls_back_to_old_record(self):
        event = ChangeEvent(category="profiles", operation="DELETE", old_record={"id": "u1"})
        assert event.row == {"id": "u1"}

    def test_past_tense(self):
        assert ChangeOperation.INSERT.past_tense == "created"
        assert ChangeOperation.DELETE.past_tense == "deleted"


@pytest.mark.unit
class TestDecodeEvent:
    def test_fills_category_and_scope_from_channel(self):
        event = decode_event(orjson.dumps({"operation": "INSERT", "record": {"id": 1}}), "notifications", "org1")
        assert event.category == "notifications"
        assert event.scope == "org1"

    @pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"operation": "TRUNCATE"}'])
    def test_malformed_payload_dropped(self, payload):
        assert decode_event(payload, "profiles", "org1") is None

    def test_channel_name(self):
        assert channel_name("realtime", "profiles", "org1") == "realtime:profiles:org1"


@pytest.mark.unit
class TestRedisPushConnection:
    @pytest.mark.asyncio
    async def test_next_event_decodes_message(self, pubsub):
        pubsub.get_message.return_value = {
            "type": "message",
            "data": orjson.dumps({"operation": "UPDATE", "record": {"id": "u1"}}),
        }
        connection = RedisPushConnection(pubsub, "realtime:profiles:org1", "profiles", "org1")

        event = await connection.next_event(timeout=0.1)

        assert event.category == "profiles"
        assert event.record == {"id": "u1"}
        pubsub.get_message.assert_awaited_once_with(ignore_subscribe_messages=True, timeout=0.1)

    @pytest.mark.asyncio
    async def test_no_message_returns_none(self, pubsub):
        connection = RedisPushConnection(pubsub, "c", "profiles", "org1")
        assert await connection.next_event(timeout=0.1) is None

    @pytest.mark.asyncio
    async def test_redis_error_becomes_channel_error(self, pubsub):
        pubsub.get_message.side_effect = RedisConnectionError("gone")
        connection = RedisPushConnection(pubsub, "c", "profiles", "org1")

        with pytest.raises(ChannelConnectionError):
            await connection.next_event(timeout=0.1)

    @pytest.mark.asyncio
    async def test_close_unsubscribes_once(self, pubsub):
        connection = RedisPushConnection(pubsub, "c", "profiles", "org1")

        await connection.close()
        await connection.close()

        pubsub.unsubscribe.assert_awaited_once_with("c")
        pubsub.aclose.assert_awaited_once()
        with pytest.raises(ChannelConnectionError):
            await connection.next_event(timeout=0.1)


@pytest.mark.unit
class TestRedisPushTransport:
    @pytest.mark.asyncio
    async def test_open_channel_subscribes(self, redis_client, pubsub):
        transport = RedisPushTransport(redis_client, prefix="rt")

        connection = await transport.open_channel("profiles", "org1")

        pubsub.subscribe.assert_awaited_once_with("rt:profiles:org1")
        assert connection.channel_id == "rt:profiles:org1"

    @pytest.mark.asyncio
    async def test_subscribe_failure_raises_and_cleans_up(self, redis_client, pubsub):
        pubsub.subscribe.side_effect = RedisConnectionError("refused")
        transport = RedisPushTransport(redis_client)

        with pytest.raises(ChannelConnectionError):
            await transport.open_channel("profiles", "org1")
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_publish_uses_event_channel(self, redis_client):
        transport = RedisPushTransport(redis_client)
        event = ChangeEvent(category="profiles", scope="org1", operation="INSERT", record={"id": "u1"})

        await transport.publish(event)

        channel, payload = redis_client.publish.await_args.args
        assert channel == "realtime:profiles:org1"
        assert orjson.loads(payload)["record"] == {"id": "u1"}

    @pytest.mark.asyncio
    async def test_aclose_only_when_owned(self, redis_client):
        await RedisPushTransport(redis_client).aclose()
        redis_client.aclose.assert_not_awaited()

        await RedisPushTransport(redis_client, owns_client=True).aclose()
        redis_client.aclose.assert_awaited_once()
