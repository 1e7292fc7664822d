"""
Event Streaming - In-memory pub/sub for resource lifecycle events.

Lifecycle events (added, modified, deleted) drive the controller through
the dispatcher. The same stream is exposed to clients as Server-Sent
Events, similar to the Kubernetes watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from store import resource_identity

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of resource events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


@dataclass
class ResourceEvent:
    """Event emitted when a resource changes."""

    event_type: EventType
    namespace: str
    name: str
    resource: Dict[str, Any]
    timestamp: str
    old_resource: Optional[Dict[str, Any]] = None

    @property
    def identity(self) -> Tuple[str, str]:
        """The (namespace, name) the event is about."""
        return self.namespace, self.name

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "namespace": self.namespace,
            "name": self.name,
            "resource": self.resource,
            "timestamp": self.timestamp,
        }
        if self.old_resource is not None:
            data["old_resource"] = self.old_resource
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Dict[str, Any],
        old_resource: Optional[Dict[str, Any]] = None,
    ) -> "ResourceEvent":
        """
        Create an event from a resource attribute map.

        Args:
            event_type: The type of event.
            resource: The resource (the new state for MODIFIED).
            old_resource: The previous state, for MODIFIED events.

        Returns:
            A new ResourceEvent instance.
        """
        namespace, name = resource_identity(resource)
        return cls(
            event_type=event_type,
            namespace=namespace,
            name=name,
            resource=resource,
            old_resource=old_resource,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ResourceEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ResourceEvent"]:
        return self

    async def __anext__(self) -> "ResourceEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for resource events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues drop the event for that subscriber only.
    Subscribers that must not lose events (the dispatcher) should
    subscribe with an unbounded queue (``queue_size=0``).
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for "
                    f"{event.namespace}/{event.name} "
                    f"(subscriber {subscriber_id}: queue full)"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
        queue_size: Optional[int] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.
            queue_size: Override of the bus's queue size, 0 for unbounded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        maxsize = self._queue_size if queue_size is None else queue_size
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            _close_queue(queue)
            logger.info(f"Unsubscribed: {subscriber_id}")

    async def close(self) -> None:
        """Terminate every subscription."""
        async with self._lock:
            queues = list(self._subscribers.values())
            self._subscribers.clear()

        for queue in queues:
            _close_queue(queue)

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


def _close_queue(queue: asyncio.Queue) -> None:
    try:
        queue.put_nowait(None)
    except asyncio.QueueFull:
        # Make room for the sentinel; the subscriber is going away anyway
        queue.get_nowait()
        queue.put_nowait(None)
