"""
Subscription Manager

Multiplexes subscribers over shared push channels and turns change events
into cache invalidations.

Channels:
    One channel per (event category, scope), shared by every subscriber that
    asks for it and reference counted. The first subscriber opens it in a
    background task; the last unsubscribe cancels the listener and closes the
    connection.

Events (per channel, in receipt order):
    1. category + operation → mutation type (explicit table, otherwise
       "{singular category}_{created|updated|deleted}")
    2. context = {"org_id": scope, ...record ids}
    3. InvalidationManager.invalidate_by_mutation_type(mutation_type, context)
    4. on_event callbacks of the channel's subscribers

Connection failures never reach the subscribe() caller: they are logged,
reported to on_error and the channel is marked failed. The next subscribe()
to a failed channel reopens it, keeping its subscribers. Delivery is
at-most-once; nothing is replayed after a reconnect.

Author: System Architect
Date: 2026-03-02
"""

import asyncio
import inspect
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from querysync.core.config.constants import ChannelState, Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.realtime.events import ChangeEvent, ChangeOperation
from querysync.infrastructure.realtime.transport import PushTransport

logger = get_logger(__name__)

EventCallback = Callable[[ChangeEvent], Any]
ErrorCallback = Callable[[BaseException], Any]
EventMapper = Callable[[ChangeEvent], str]

# (category, operation) → mutation type; operation None matches any.
EVENT_MUTATION_TYPES: dict[tuple[str, ChangeOperation | None], str] = {
    ("profiles", ChangeOperation.INSERT): "user_created",
    ("profiles", ChangeOperation.UPDATE): "user_updated",
    ("profiles", ChangeOperation.DELETE): "user_deleted",
    ("organizations", ChangeOperation.UPDATE): "organization_updated",
    ("organization_memberships", None): "membership_changed",
    ("notifications", ChangeOperation.INSERT): "notification_created",
    ("notifications", ChangeOperation.UPDATE): "notification_read",
}

_USER_CATEGORIES = {"users", "profiles"}


def _singular(category: str) -> str:
    if category.endswith("ies"):
        return category[:-3] + "y"
    if category.endswith("s") and not category.endswith("ss"):
        return category[:-1]
    return category


def default_event_mapper(event: ChangeEvent) -> str:
    mapped = EVENT_MUTATION_TYPES.get((event.category, event.operation))
    if mapped is None:
        mapped = EVENT_MUTATION_TYPES.get((event.category, None))
    if mapped is None:
        mapped = f"{_singular(event.category)}_{event.operation.past_tense}"
    return mapped


def build_event_context(event: ChangeEvent, scope: str) -> dict[str, Any]:
    """Invalidation context for an event received on ``scope``."""
    row = event.row
    context: dict[str, Any] = {"org_id": scope, "record_id": row.get("id")}
    if row.get("user_id") is not None:
        context["user_id"] = row["user_id"]
    elif event.category in _USER_CATEGORIES and row.get("id") is not None:
        context["user_id"] = row["id"]
    return context


@dataclass
class Subscription:
    subscription_id: str
    scope: str
    event_types: tuple[str, ...]
    on_event: EventCallback | None = None
    on_error: ErrorCallback | None = None
    active: bool = True
    _manager: "SubscriptionManager | None" = field(default=None, repr=False)

    @property
    def channel_ids(self) -> tuple[str, ...]:
        return tuple(f"{category}:{self.scope}" for category in self.event_types)

    def unsubscribe(self) -> bool:
        if self._manager is None:
            return False
        return self._manager.unsubscribe(self)

    __call__ = unsubscribe


@dataclass
class _Channel:
    category: str
    scope: str
    ref_count: int = 0
    state: ChannelState = ChannelState.CONNECTING
    task: asyncio.Task | None = None
    subscribers: dict[str, Subscription] = field(default_factory=dict)
    events_received: int = 0
    reconnects: int = 0
    last_error: str | None = None

    @property
    def channel_id(self) -> str:
        return f"{self.category}:{self.scope}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "state": self.state.value,
            "ref_count": self.ref_count,
            "events_received": self.events_received,
            "reconnects": self.reconnects,
            "last_error": self.last_error,
        }


class SubscriptionManager:
    """
    Usage:
        subscription = manager.subscribe("org1", ["profiles", "notifications"])
        ...
        subscription.unsubscribe()
    """

    def __init__(
        self,
        transport: PushTransport,
        invalidation_manager,
        *,
        settings: Settings | None = None,
        event_mapper: EventMapper | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self._transport = transport
        self._invalidation = invalidation_manager
        self._event_mapper = event_mapper or default_event_mapper
        self._metrics = metrics
        self.poll_timeout = settings.realtime.REALTIME_POLL_TIMEOUT

        self._channels: dict[tuple[str, str], _Channel] = {}
        self._closing: set[asyncio.Task] = set()
        self._error_callbacks: set[asyncio.Future] = set()
        self._subscriptions = 0
        self._events = 0
        self._callback_errors = 0

    # =========================================================================
    # Subscribe / unsubscribe
    # =========================================================================

    def subscribe(
        self,
        scope: str,
        event_types: Iterable[str],
        on_event: EventCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """
        Subscribe to change events of ``event_types`` within ``scope``.

        Returns immediately; channels connect in the background. Must be
        called from within a running event loop.
        """
        subscription = Subscription(
            subscription_id=f"sub_{uuid.uuid4().hex[:12]}",
            scope=scope,
            event_types=tuple(dict.fromkeys(event_types)),
            on_event=on_event,
            on_error=on_error,
            _manager=self,
        )

        for category in subscription.event_types:
            channel = self._channels.get((category, scope))
            if channel is None:
                channel = _Channel(category=category, scope=scope)
                self._channels[(category, scope)] = channel
                self._open(channel, "Opening push channel")
            elif channel.state == ChannelState.FAILED:
                channel.reconnects += 1
                self._open(channel, "Reopening failed push channel")
            channel.ref_count += 1
            channel.subscribers[subscription.subscription_id] = subscription

        self._subscriptions += 1
        self._update_gauge()
        log_stage(
            logger,
            Stage.PUSH_SUBSCRIPTION,
            "Subscribed",
            level="debug",
            subscription_id=subscription.subscription_id,
            channels=list(subscription.channel_ids),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        if not subscription.active:
            return False
        subscription.active = False

        for category in subscription.event_types:
            key = (category, subscription.scope)
            channel = self._channels.get(key)
            if channel is None:
                continue
            channel.subscribers.pop(subscription.subscription_id, None)
            channel.ref_count -= 1
            if channel.ref_count <= 0:
                del self._channels[key]
                self._teardown(channel)

        self._update_gauge()
        return True

    def _open(self, channel: _Channel, message: str) -> None:
        channel.state = ChannelState.CONNECTING
        channel.task = asyncio.create_task(self._run_channel(channel), name=f"push:{channel.channel_id}")
        log_stage(
            logger,
            Stage.PUSH_SUBSCRIPTION,
            message,
            channel=channel.channel_id,
            reconnects=channel.reconnects,
        )

    def _teardown(self, channel: _Channel) -> None:
        channel.state = ChannelState.CLOSED
        task = channel.task
        if task is not None and not task.done():
            task.cancel()
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        log_stage(logger, Stage.PUSH_SUBSCRIPTION, "Push channel released", channel=channel.channel_id)

    # =========================================================================
    # Channel listener
    # =========================================================================

    async def _run_channel(self, channel: _Channel) -> None:
        try:
            connection = await self._transport.open_channel(channel.category, channel.scope)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(channel, e, "Push channel connection failed")
            return

        if channel.state == ChannelState.CLOSED:
            await connection.close()
            return
        channel.state = ChannelState.OPEN
        log_stage(logger, Stage.PUSH_SUBSCRIPTION, "Push channel open", channel=channel.channel_id)

        try:
            while True:
                try:
                    event = await connection.next_event(self.poll_timeout)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._fail(channel, e, "Push channel dropped")
                    return
                if event is not None:
                    await self._dispatch(channel, event)
        finally:
            await connection.close()

    def _fail(self, channel: _Channel, error: Exception, message: str) -> None:
        channel.state = ChannelState.FAILED
        channel.last_error = str(error)[:500]
        log_stage(
            logger,
            Stage.PUSH_SUBSCRIPTION,
            message,
            level="warning",
            channel=channel.channel_id,
            error_type=type(error).__name__,
            error=channel.last_error,
        )
        if self._metrics:
            self._metrics.record_error(type(error).__name__, Stage.PUSH_SUBSCRIPTION.value)
        for subscription in list(channel.subscribers.values()):
            if subscription.on_error is not None:
                outcome = self._invoke(subscription.on_error, error, subscription)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._error_callbacks.add(task)
                    task.add_done_callback(partial(self._error_callback_done, subscription))

    def _error_callback_done(self, subscription: Subscription, task: asyncio.Future) -> None:
        self._error_callbacks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._callback_failed(subscription, error)

    async def _dispatch(self, channel: _Channel, event: ChangeEvent) -> None:
        channel.events_received += 1
        self._events += 1
        if self._metrics:
            self._metrics.record_push_event(event.category, event.operation.value)

        mutation_type = self._event_mapper(event)
        context = build_event_context(event, channel.scope)
        try:
            evicted = self._invalidation.invalidate_by_mutation_type(mutation_type, context)
        except Exception as e:
            log_stage(
                logger,
                Stage.PUSH_SUBSCRIPTION,
                "Invalidation for push event failed",
                level="error",
                channel=channel.channel_id,
                mutation_type=mutation_type,
                error=str(e),
            )
        else:
            log_stage(
                logger,
                Stage.PUSH_SUBSCRIPTION,
                "Push event applied",
                level="debug",
                channel=channel.channel_id,
                mutation_type=mutation_type,
                evicted=len(evicted),
            )

        for subscription in list(channel.subscribers.values()):
            if subscription.active and subscription.on_event is not None:
                outcome = self._invoke(subscription.on_event, event, subscription)
                if inspect.isawaitable(outcome):
                    try:
                        await outcome
                    except Exception as e:
                        self._callback_failed(subscription, e)

    def _invoke(self, callback: Callable[[Any], Any], argument: Any, subscription: Subscription) -> Any:
        try:
            return callback(argument)
        except Exception as e:
            self._callback_failed(subscription, e)
            return None

    def _callback_failed(self, subscription: Subscription, error: Exception) -> None:
        self._callback_errors += 1
        log_stage(
            logger,
            Stage.PUSH_SUBSCRIPTION,
            "Subscriber callback raised",
            level="error",
            subscription_id=subscription.subscription_id,
            error_type=type(error).__name__,
            error=str(error)[:200],
        )

    # =========================================================================
    # Introspection / teardown
    # =========================================================================

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_active_channels(len(self._channels))

    def channel_stats(self) -> dict[str, dict[str, Any]]:
        return {channel.channel_id: channel.to_dict() for channel in self._channels.values()}

    def get_channel_state(self, category: str, scope: str) -> ChannelState | None:
        channel = self._channels.get((category, scope))
        return channel.state if channel else None

    def stats(self) -> dict[str, Any]:
        states = [c.state for c in self._channels.values()]
        return {
            "channels": len(states),
            "open_channels": states.count(ChannelState.OPEN),
            "failed_channels": states.count(ChannelState.FAILED),
            "subscriptions_created": self._subscriptions,
            "events_received": self._events,
            "callback_errors": self._callback_errors,
        }

    async def shutdown(self) -> None:
        for channel in list(self._channels.values()):
            for subscription in list(channel.subscribers.values()):
                subscription.active = False
            self._teardown(channel)
        self._channels.clear()
        self._update_gauge()
        pending = list(self._closing) + list(self._error_callbacks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        log_stage(logger, Stage.SHUTDOWN, "Subscription manager stopped")
