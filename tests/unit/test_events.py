"""
Unit tests for EventChannel.

Tests cover:
- Publishing to several subscribers with operation and type scoping
- Operation-scoped subscriptions ending on completion
- Bounded queues dropping the oldest events
- Dashboards and widget data
- Closing the channel
"""

import asyncio

import pytest

from envclone.events import Dashboard, EventChannel, EventType


class TestPublishSubscribe:
    """Tests for publish and subscribe."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_events(self, events: EventChannel) -> None:
        first = events.subscribe()
        second = events.subscribe()

        events.publish(EventType.PROGRESS, "clone_1", {"progress": 30})

        assert (await first.get(timeout=1)).payload == {"progress": 30}
        assert (await second.get(timeout=1)).operation_id == "clone_1"
        assert events.subscriber_count == 2

    @pytest.mark.asyncio
    async def test_operation_scope(self, events: EventChannel) -> None:
        subscription = events.subscribe("clone_2")
        events.publish(EventType.LOG, "clone_1", {"message": "other"})
        events.publish(EventType.LOG, "clone_2", {"message": "mine"})

        assert subscription.pending == 1
        assert (await subscription.get(timeout=1)).payload["message"] == "mine"

    @pytest.mark.asyncio
    async def test_type_filter(self, events: EventChannel) -> None:
        subscription = events.subscribe(types=[EventType.PHASE_CHANGED])
        events.publish(EventType.PROGRESS, "clone_1", {"progress": 10})
        events.publish(EventType.PHASE_CHANGED, "clone_1", {"phase": "copying"})

        event = await subscription.get(timeout=1)
        assert event.type == EventType.PHASE_CHANGED
        assert subscription.pending == 0

    @pytest.mark.asyncio
    async def test_scoped_subscription_ends_on_completion(self, events: EventChannel) -> None:
        """Test iteration stops after the operation's completion event."""
        subscription = events.subscribe("clone_1")
        events.publish(EventType.PROGRESS, "clone_1", {"progress": 50})
        events.publish(EventType.OPERATION_COMPLETED, "clone_1", {"success": True})

        received = [event.type async for event in subscription]

        assert received == [EventType.PROGRESS, EventType.OPERATION_COMPLETED]
        assert events.subscriber_count == 0
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_unscoped_subscription_survives_completion(self, events: EventChannel) -> None:
        subscription = events.subscribe()
        events.publish(EventType.OPERATION_COMPLETED, "clone_1")
        assert (await subscription.get(timeout=1)).type == EventType.OPERATION_COMPLETED
        assert events.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_get_times_out(self, events: EventChannel) -> None:
        subscription = events.subscribe()
        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_context_manager_unregisters(self, events: EventChannel) -> None:
        async with events.subscribe() as subscription:
            assert events.subscriber_count == 1
        assert events.subscriber_count == 0
        events.publish(EventType.LOG, None, {"message": "late"})
        assert subscription.pending == 0


class TestBackpressure:
    """Tests for bounded subscriber queues."""

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self) -> None:
        channel = EventChannel(max_queue_size=2)
        subscription = channel.subscribe()
        for progress in (10, 20, 30):
            channel.publish(EventType.PROGRESS, "clone_1", {"progress": progress})

        assert channel.dropped_events == 1
        assert (await subscription.get(timeout=1)).payload["progress"] == 20
        assert (await subscription.get(timeout=1)).payload["progress"] == 30

    def test_invalid_queue_size(self) -> None:
        with pytest.raises(ValueError):
            EventChannel(max_queue_size=0)


class TestDashboards:
    """Tests for dashboard tracking."""

    @pytest.mark.asyncio
    async def test_create_and_update(self, events: EventChannel) -> None:
        subscription = events.subscribe("clone_1")
        events.create_dashboard(Dashboard("clone_1", "Clone to training", widgets=("progress",)))
        events.update_dashboard_data("clone_1", "progress", {"value": 40})

        created = await subscription.get(timeout=1)
        updated = await subscription.get(timeout=1)
        assert created.type == EventType.DASHBOARD_CREATED
        assert created.payload == {"title": "Clone to training", "widgets": ["progress"]}
        assert updated.payload == {"widget_id": "progress", "data": {"value": 40}}
        assert events.get_dashboard("clone_1").title == "Clone to training"
        assert events.get_dashboard_data("clone_1").widgets == {"progress": {"value": 40}}

    def test_unknown_dashboard(self, events: EventChannel) -> None:
        assert events.get_dashboard("missing") is None
        assert events.get_dashboard_data("missing") is None


class TestClose:
    """Tests for EventChannel.close."""

    @pytest.mark.asyncio
    async def test_close_ends_subscriptions(self, events: EventChannel) -> None:
        subscription = events.subscribe()
        events.publish(EventType.LOG, None, {"message": "last"})
        events.close()

        received = [event async for event in subscription]

        assert [event.payload["message"] for event in received] == ["last"]
        assert events.is_closed
        assert events.subscriber_count == 0

    def test_subscribe_after_close_fails(self, events: EventChannel) -> None:
        events.close()
        with pytest.raises(RuntimeError):
            events.subscribe()

    def test_publish_after_close_is_ignored(self, events: EventChannel) -> None:
        events.close()
        event = events.publish(EventType.LOG, None)
        assert event.payload == {}
