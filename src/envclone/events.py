"""
EventChannel - In-process event stream for clone operations.

The orchestrator publishes progress, phase changes, log lines, dashboard
updates and completion events here; monitoring code consumes them through
async iterators. Nothing is served over the network.

Features:
    - Multiple simultaneous subscribers, optionally scoped to one operation
      and to a set of event types
    - Bounded per-subscriber queues: a slow subscriber loses its oldest
      events instead of blocking the clone
    - Operation-scoped subscriptions end on that operation's completion
    - Dashboards: named widget data kept per dashboard, updates published

Usage:
    >>> channel = EventChannel()
    >>> async with channel.subscribe(operation_id) as events:
    ...     async for event in events:
    ...         print(event.type.value, event.payload)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kinds of events published for clone operations."""

    DASHBOARD_CREATED = "dashboard-created"
    DASHBOARD_DATA_UPDATED = "dashboard-data-updated"
    PROGRESS = "progress"
    PHASE_CHANGED = "phase-changed"
    LOG = "log"
    OPERATION_COMPLETED = "operation-completed"


@dataclass(frozen=True)
class CloneEvent:
    """
    One published event.

    Attributes:
        type: Kind of event.
        operation_id: Operation the event belongs to (None for global events).
        payload: Event specific data.
        timestamp: When the event was published (UTC).
    """

    type: EventType
    operation_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class Dashboard:
    """A monitoring dashboard definition."""

    dashboard_id: str
    title: str
    description: str = ""
    widgets: tuple[str, ...] = ()


@dataclass
class DashboardData:
    """Latest data of each widget of a dashboard."""

    dashboard_id: str
    widgets: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class Subscription:
    """
    An active subscription to an EventChannel.

    Iterate it with ``async for``; use it as an async context manager to make
    sure it is unregistered. Iteration stops when the channel closes or, for
    an operation-scoped subscription, after the operation completes.
    """

    def __init__(
        self,
        channel: EventChannel,
        subscriber_id: int,
        queue: asyncio.Queue[CloneEvent | None],
        operation_id: str | None,
        types: frozenset[EventType] | None,
    ) -> None:
        self._channel = channel
        self._subscriber_id = subscriber_id
        self._queue = queue
        self.operation_id = operation_id
        self.types = types
        self._finished = False

    def accepts(self, event: CloneEvent) -> bool:
        if self.operation_id is not None and event.operation_id != self.operation_id:
            return False
        return self.types is None or event.type in self.types

    def ends_with(self, event: CloneEvent) -> bool:
        return (
            self.operation_id is not None
            and event.operation_id == self.operation_id
            and event.type == EventType.OPERATION_COMPLETED
        )

    @property
    def pending(self) -> int:
        """Number of events waiting to be consumed."""
        return self._queue.qsize()

    def __aiter__(self) -> AsyncIterator[CloneEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[CloneEvent]:
        while not self._finished:
            event = await self._queue.get()
            if event is None:
                self._finished = True
                break
            yield event

    async def get(self, timeout: float | None = None) -> CloneEvent | None:
        """
        Wait for the next event.

        Returns:
            The event, or None once the subscription has ended.

        Raises:
            TimeoutError: If no event arrives within ``timeout`` seconds.
        """
        if self._finished:
            return None
        event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if event is None:
            self._finished = True
        return event

    def close(self) -> None:
        """Unregister from the channel; pending events are discarded."""
        self._finished = True
        self._channel._unregister(self._subscriber_id)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class EventChannel:
    """
    Publish/subscribe channel for clone events.

    Designed for asyncio and not thread-safe: publish and subscribe from the
    event loop that runs the clones.

    Example:
        >>> channel = EventChannel(max_queue_size=50)
        >>> subscription = channel.subscribe(types=[EventType.PROGRESS])
        >>> channel.publish(EventType.PROGRESS, "clone_1", {"progress": 30})
        >>> (await subscription.get()).payload
        {'progress': 30}
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")
        self._max_queue_size = max_queue_size
        self._subscriptions: dict[int, Subscription] = {}
        self._next_subscriber_id = 0
        self._dashboards: dict[str, Dashboard] = {}
        self._dashboard_data: dict[str, DashboardData] = {}
        self._closed = False
        self._dropped = 0

    @property
    def subscriber_count(self) -> int:
        """Get the number of active subscribers."""
        return len(self._subscriptions)

    @property
    def dropped_events(self) -> int:
        """Events discarded because a subscriber queue was full."""
        return self._dropped

    @property
    def is_closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        operation_id: str | None = None,
        types: Iterable[EventType] | None = None,
    ) -> Subscription:
        """
        Register a subscriber.

        Args:
            operation_id: Only receive events of this operation.
            types: Only receive events of these types.

        Raises:
            RuntimeError: If the channel has been closed.
        """
        if self._closed:
            raise RuntimeError("EventChannel has been closed")
        subscriber_id = self._next_subscriber_id
        self._next_subscriber_id += 1
        queue: asyncio.Queue[CloneEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        subscription = Subscription(
            self,
            subscriber_id,
            queue,
            operation_id,
            frozenset(types) if types is not None else None,
        )
        self._subscriptions[subscriber_id] = subscription
        logger.debug(
            "Registered subscriber %d for operation %s (total: %d)",
            subscriber_id,
            operation_id or "*",
            len(self._subscriptions),
        )
        return subscription

    def publish(
        self,
        event_type: EventType,
        operation_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> CloneEvent:
        """Deliver an event to every matching subscriber. Never blocks."""
        event = CloneEvent(event_type, operation_id, dict(payload or {}))
        if self._closed:
            return event
        for subscriber_id, subscription in list(self._subscriptions.items()):
            if subscription.accepts(event):
                self._offer(subscriber_id, subscription._queue, event)
            if subscription.ends_with(event):
                self._offer(subscriber_id, subscription._queue, None)
                del self._subscriptions[subscriber_id]
        return event

    def create_dashboard(self, dashboard: Dashboard) -> None:
        self._dashboards[dashboard.dashboard_id] = dashboard
        self._dashboard_data.setdefault(
            dashboard.dashboard_id, DashboardData(dashboard.dashboard_id)
        )
        self.publish(
            EventType.DASHBOARD_CREATED,
            dashboard.dashboard_id,
            {"title": dashboard.title, "widgets": list(dashboard.widgets)},
        )

    def update_dashboard_data(self, dashboard_id: str, widget_id: str, data: Any) -> None:
        """Replace the data of one widget and publish the update."""
        current = self._dashboard_data.setdefault(dashboard_id, DashboardData(dashboard_id))
        current.widgets[widget_id] = data
        current.timestamp = datetime.now(UTC)
        self.publish(
            EventType.DASHBOARD_DATA_UPDATED,
            dashboard_id,
            {"widget_id": widget_id, "data": data},
        )

    def get_dashboard(self, dashboard_id: str) -> Dashboard | None:
        return self._dashboards.get(dashboard_id)

    def get_dashboard_data(self, dashboard_id: str) -> DashboardData | None:
        return self._dashboard_data.get(dashboard_id)

    def close(self) -> None:
        """End every subscription and stop delivering events."""
        if self._closed:
            return
        self._closed = True
        for subscriber_id, subscription in list(self._subscriptions.items()):
            self._offer(subscriber_id, subscription._queue, None)
        self._subscriptions.clear()
        logger.debug("EventChannel closed")

    def _unregister(self, subscriber_id: int) -> None:
        if self._subscriptions.pop(subscriber_id, None) is not None:
            logger.debug(
                "Unregistered subscriber %d (remaining: %d)",
                subscriber_id,
                len(self._subscriptions),
            )

    def _offer(
        self,
        subscriber_id: int,
        queue: asyncio.Queue[CloneEvent | None],
        event: CloneEvent | None,
    ) -> None:
        if queue.full():
            queue.get_nowait()
            self._dropped += 1
            logger.warning("Subscriber %d is lagging; dropped oldest event", subscriber_id)
        queue.put_nowait(event)
