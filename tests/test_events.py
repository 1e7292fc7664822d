"""Unit tests for event streaming."""

import asyncio
import json
from datetime import datetime

import pytest

from conftest import make_resource
from events import EventBus, EventSubscription, EventType, ResourceEvent


def make_event(event_type=EventType.ADDED, name="web-cache", old_resource=None):
    return ResourceEvent(
        event_type=event_type,
        namespace="team-a",
        name=name,
        resource=make_resource(name=name),
        timestamp="2024-01-15T10:30:00.000000Z",
        old_resource=old_resource,
    )


# ==================== ResourceEvent tests ====================


class TestResourceEvent:
    """Tests for the ResourceEvent dataclass."""

    def test_to_sse_format(self):
        sse = make_event().to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: ADDED"
        assert lines[1].startswith("data: ")
        assert sse.endswith("\n\n")

    def test_to_sse_json_valid(self):
        data_line = make_event().to_sse().split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed["event_type"] == "ADDED"
        assert parsed["namespace"] == "team-a"
        assert parsed["name"] == "web-cache"
        assert parsed["resource"]["spec"] == {"namespace": "cache", "size": 3}
        assert parsed["timestamp"] == "2024-01-15T10:30:00.000000Z"
        assert "old_resource" not in parsed

    def test_to_sse_includes_old_resource(self):
        old = make_resource(spec={"namespace": "cache", "size": 1})
        data_line = make_event(EventType.MODIFIED, old_resource=old).to_sse()
        parsed = json.loads(data_line.split("\n")[1][len("data: ") :])
        assert parsed["old_resource"]["spec"]["size"] == 1

    def test_to_sse_datetime_in_resource(self):
        event = make_event()
        event.resource["metadata"]["seen"] = datetime(2024, 1, 15, 10, 30, 0)
        parsed = json.loads(event.to_sse().split("\n")[1][len("data: ") :])
        assert parsed["resource"]["metadata"]["seen"] == "2024-01-15T10:30:00"

    def test_from_resource(self):
        resource = make_resource(name="db", namespace="team-b")
        event = ResourceEvent.from_resource(EventType.DELETED, resource)
        assert event.event_type == EventType.DELETED
        assert event.identity == ("team-b", "db")
        assert event.resource is resource
        assert event.old_resource is None
        assert event.timestamp.endswith("Z")
        datetime.fromisoformat(event.timestamp.rstrip("Z"))


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_async_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        event = make_event()
        await queue.put(event)
        await queue.put(None)

        received = [e async for e in sub]

        assert received == [event]

    async def test_filter_fn_applied(self):
        queue = asyncio.Queue()
        sub = EventSubscription(
            queue, filter_fn=lambda e: e.event_type == EventType.ADDED
        )
        await queue.put(make_event(EventType.MODIFIED))
        await queue.put(make_event(EventType.ADDED))
        await queue.put(None)

        received = [e async for e in sub]

        assert [e.event_type for e in received] == [EventType.ADDED]


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=2)

    async def test_publish_no_subscribers(self, bus):
        await bus.publish(make_event())

    async def test_multiple_subscribers_all_receive(self, bus):
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()
        event = make_event()

        await bus.publish(event)

        assert await asyncio.wait_for(sub1.__anext__(), timeout=1.0) is event
        assert await asyncio.wait_for(sub2.__anext__(), timeout=1.0) is event

    async def test_unsubscribe_stops_iteration(self, bus):
        sid, sub = await bus.subscribe()
        await bus.unsubscribe(sid)

        assert bus.subscriber_count() == 0
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()

    async def test_unsubscribe_unknown_id_is_noop(self, bus):
        await bus.unsubscribe("nope")

    async def test_full_queue_drops_for_that_subscriber_only(self, bus):
        _, slow = await bus.subscribe()
        _, unbounded = await bus.subscribe(queue_size=0)

        for i in range(5):
            await bus.publish(make_event(name=f"r{i}"))

        assert slow._queue.qsize() == 2
        assert unbounded._queue.qsize() == 5

    async def test_close_ends_every_subscription_even_when_full(self, bus):
        _, full = await bus.subscribe()
        await bus.publish(make_event(name="a"))
        await bus.publish(make_event(name="b"))
        _, empty = await bus.subscribe()

        await bus.close()

        assert bus.subscriber_count() == 0
        # The oldest event makes room for the end-of-stream marker
        assert [e.name async for e in full] == ["b"]
        assert [e async for e in empty] == []
