"""
Realtime Test Factory

Queue-backed PushTransport double and change event builders.
"""

import asyncio
from typing import Any

from querysync.core.exceptions import ChannelConnectionError
from querysync.infrastructure.realtime.events import ChangeEvent


class InMemoryPushConnection:
    """One channel; events (or exceptions) are fed through ``queue``."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def next_event(self, timeout: float) -> ChangeEvent | None:
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class InMemoryPushTransport:
    """
    PushTransport double.

    Categories listed in ``fail_categories`` raise ChannelConnectionError
    when opened.
    """

    def __init__(self, fail_categories: tuple[str, ...] = ()):
        self.fail_categories = set(fail_categories)
        self.connections: dict[str, InMemoryPushConnection] = {}
        self.opened: list[str] = []

    async def open_channel(self, category: str, scope: str) -> InMemoryPushConnection:
        channel_id = f"{category}:{scope}"
        self.opened.append(channel_id)
        if category in self.fail_categories:
            raise ChannelConnectionError(f"Cannot open {channel_id}", details={"channel": channel_id})
        connection = InMemoryPushConnection(channel_id)
        self.connections[channel_id] = connection
        return connection

    def push(self, category: str, scope: str, item: Any) -> None:
        self.connections[f"{category}:{scope}"].queue.put_nowait(item)


class EventFactory:
    """Factory for ChangeEvent payloads."""

    @staticmethod
    def change(
        category: str = "profiles",
        operation: str = "UPDATE",
        scope: str = "org1",
        record: dict[str, Any] | None = None,
        old_record: dict[str, Any] | None = None,
    ) -> ChangeEvent:
        return ChangeEvent(
            category=category,
            scope=scope,
            operation=operation,
            record=record or {},
            old_record=old_record or {},
        )
