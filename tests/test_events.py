"""Unit tests for event streaming."""

import asyncio
import json
from datetime import datetime

import pytest

from events import EventBus, EventSubscription, EventType, ResourceEvent


def _event(event_type=EventType.CREATED, resource_id=1, name="test-tug", data=None):
    return ResourceEvent(
        event_type=event_type,
        resource_id=resource_id,
        resource_kind="TugResource",
        resource_namespace="default",
        resource_name=name,
        generation=1,
        resource_data=data if data is not None else {},
        timestamp="2024-01-15T10:30:00Z",
    )


# ==================== EventType tests ====================


class TestEventType:
    """Tests for the EventType enum."""

    def test_all_members(self):
        assert [e.value for e in EventType] == [
            "CREATED",
            "MODIFIED",
            "DELETED",
            "RECONCILED",
            "RECONCILE_REQUESTED",
        ]

    @pytest.mark.parametrize(
        "event_type,expected",
        [
            (EventType.CREATED, True),
            (EventType.MODIFIED, True),
            (EventType.DELETED, True),
            (EventType.RECONCILED, False),
            (EventType.RECONCILE_REQUESTED, False),
        ],
    )
    def test_changes_desired_state(self, event_type, expected):
        assert event_type.changes_desired_state is expected


# ==================== ResourceEvent tests ====================


class TestResourceEvent:
    """Tests for the ResourceEvent dataclass."""

    @pytest.fixture
    def sample_resource(self):
        return {
            "id": 1,
            "kind": "TugResource",
            "namespace": "team-a",
            "name": "test-tug",
            "generation": 3,
            "spec": {"authoritative_value": 2, "contended_value": 1},
            "status": {},
        }

    def test_to_sse_format(self):
        sse = _event().to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: CREATED"
        assert lines[1].startswith("data: ")
        assert sse.endswith("\n\n")

    def test_to_sse_json_valid(self):
        data_line = _event(EventType.MODIFIED).to_sse().split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed["event_type"] == "MODIFIED"
        assert parsed["resource_id"] == 1
        assert parsed["resource_kind"] == "TugResource"
        assert parsed["resource_namespace"] == "default"
        assert parsed["resource_name"] == "test-tug"
        assert parsed["generation"] == 1
        assert parsed["timestamp"] == "2024-01-15T10:30:00Z"

    def test_to_sse_datetime_in_resource_data(self, sample_resource):
        """Datetime objects in resource_data are serialized properly."""
        sample_resource["created_at"] = datetime(2024, 1, 15, 10, 30, 0)
        data_line = _event(data=sample_resource).to_sse().split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed["resource_data"]["created_at"] == "2024-01-15T10:30:00"

    def test_from_resource(self, sample_resource):
        event = ResourceEvent.from_resource(EventType.CREATED, sample_resource)
        assert event.event_type == EventType.CREATED
        assert event.resource_id == 1
        assert event.resource_kind == "TugResource"
        assert event.resource_namespace == "team-a"
        assert event.resource_name == "test-tug"
        assert event.generation == 3
        assert event.resource_data is sample_resource
        datetime.fromisoformat(event.timestamp.rstrip("Z"))

    def test_from_resource_defaults(self):
        event = ResourceEvent.from_resource(
            EventType.DELETED, {"id": 2, "kind": "TugResource", "name": "x"}
        )
        assert event.resource_namespace == "default"
        assert event.generation == 0


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_async_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        event = _event()
        await queue.put(event)
        await queue.put(None)

        received = [e async for e in sub]

        assert received == [event]

    async def test_filter_fn_applied(self):
        queue = asyncio.Queue()
        sub = EventSubscription(
            queue, filter_fn=lambda e: e.event_type.changes_desired_state
        )

        await queue.put(_event(EventType.RECONCILED))
        await queue.put(_event(EventType.MODIFIED))
        await queue.put(None)

        received = [e async for e in sub]

        assert [e.event_type for e in received] == [EventType.MODIFIED]


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=16)

    async def test_publish_no_subscribers(self, bus):
        await bus.publish(_event())

    async def test_multiple_subscribers_all_receive(self, bus):
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()
        event = _event()

        await bus.publish(event)

        assert await asyncio.wait_for(sub1.__anext__(), timeout=1.0) is event
        assert await asyncio.wait_for(sub2.__anext__(), timeout=1.0) is event

    async def test_unsubscribe_ends_iteration(self, bus):
        sid, sub = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(sid)

        assert bus.subscriber_count() == 0
        assert [e async for e in sub] == []

    async def test_unsubscribe_nonexistent_is_noop(self, bus):
        await bus.unsubscribe("nonexistent-id")
        assert bus.subscriber_count() == 0

    async def test_full_queue_drops_event(self):
        bus = EventBus(queue_size=1)
        _, sub = await bus.subscribe()
        first = _event(resource_id=1)

        await bus.publish(first)
        await bus.publish(_event(resource_id=2))

        assert await asyncio.wait_for(sub.__anext__(), timeout=1.0) is first

    async def test_close_ends_all_subscriptions(self, bus):
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()

        await bus.close()

        assert bus.subscriber_count() == 0
        assert [e async for e in sub1] == []
        assert [e async for e in sub2] == []

    async def test_sentinel_delivered_when_queue_full(self):
        bus = EventBus(queue_size=1)
        sid, sub = await bus.subscribe()
        await bus.publish(_event())

        await bus.unsubscribe(sid)

        assert [e async for e in sub] == []

    async def test_filtered_subscription(self, bus):
        _, sub = await bus.subscribe(
            filter_fn=lambda e: e.event_type == EventType.DELETED
        )

        await bus.publish(_event(EventType.CREATED, resource_id=1))
        await bus.publish(_event(EventType.DELETED, resource_id=2))

        received = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert received.resource_id == 2
