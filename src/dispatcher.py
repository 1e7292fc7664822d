"""
Lifecycle Dispatcher - feeds lifecycle events to the controller.

Events for one resource identity are handled strictly in delivery order,
one at a time, by a worker task that lives while that identity has
pending events. Different identities are handled concurrently, bounded by
``max_concurrent``.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from controller import PersistenceError, ReconciliationController
from events import EventBus, EventType, ResourceEvent

logger = logging.getLogger(__name__)

Identity = Tuple[str, str]

LIFECYCLE_EVENTS = (EventType.ADDED, EventType.MODIFIED, EventType.DELETED)


class LifecycleDispatcher:
    """Routes lifecycle events to controller handlers, ordered per identity."""

    def __init__(
        self,
        controller: ReconciliationController,
        max_concurrent: int = 5,
        shutdown_grace_period: float = 30.0,
    ):
        self.controller = controller
        self.max_concurrent = max_concurrent
        self.shutdown_grace_period = shutdown_grace_period
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.running = False
        self._stopping = False

        self._pending: Dict[Identity, Deque[ResourceEvent]] = {}
        self._workers: Dict[Identity, asyncio.Task] = {}
        self._event_bus: Optional[EventBus] = None
        self._subscriber_id: Optional[str] = None

    def dispatch(self, event: ResourceEvent) -> None:
        """Queue an event behind any pending events for the same identity."""
        if event.event_type not in LIFECYCLE_EVENTS:
            return
        if self._stopping:
            logger.warning(
                f"Dropping {event.event_type.value} for "
                f"{event.namespace}/{event.name}: dispatcher is stopping"
            )
            return

        key = event.identity
        self._pending.setdefault(key, deque()).append(event)
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(
                self._drain(key), name=f"reconcile:{key[0]}/{key[1]}"
            )

    def in_flight(self) -> int:
        """Number of identities with a running worker."""
        return len(self._workers)

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def start(self, event_bus: EventBus) -> None:
        """Consume lifecycle events from the bus until stopped."""
        self.running = True
        self._event_bus = event_bus
        # Unbounded: the dispatcher must never drop a lifecycle event
        self._subscriber_id, subscription = await event_bus.subscribe(queue_size=0)
        logger.info("Lifecycle dispatcher started")

        async for event in subscription:
            self.dispatch(event)

        logger.info("Lifecycle dispatcher stopped receiving events")

    async def stop(self) -> None:
        """
        Stop consuming events and wind down in-flight handlers.

        Events that have not started are dropped. Running handlers get the
        grace period to finish, then are cancelled; a cancelled add or
        update records a Failed status for its resource.
        """
        logger.info("Stopping lifecycle dispatcher")
        self.running = False
        self._stopping = True

        if self._event_bus and self._subscriber_id:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for (namespace, name), queue in self._pending.items():
            if queue:
                logger.warning(
                    f"Dropping {len(queue)} unhandled event(s) for {namespace}/{name}"
                )
                queue.clear()

        workers = list(self._workers.values())
        if not workers:
            return

        logger.info(
            f"Waiting up to {self.shutdown_grace_period}s for "
            f"{len(workers)} in-flight reconciliation(s)"
        )
        _, still_running = await asyncio.wait(
            workers, timeout=self.shutdown_grace_period
        )
        if still_running:
            logger.warning(f"Cancelling {len(still_running)} reconciliation(s)")
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _drain(self, key: Identity) -> None:
        """Handle the events queued for one identity, oldest first."""
        queue = self._pending[key]
        try:
            while queue:
                event = queue.popleft()
                async with self.semaphore:
                    # Waited for a slot while stop() ran; never started
                    if self._stopping:
                        break
                    await self._handle(event)
        finally:
            self._workers.pop(key, None)
            if not queue or self._stopping:
                self._pending.pop(key, None)

    async def _handle(self, event: ResourceEvent) -> None:
        """Invoke the handler for one event; errors are logged, not raised."""
        try:
            if event.event_type is EventType.ADDED:
                await self.controller.on_added(event.resource)
            elif event.event_type is EventType.MODIFIED:
                await self.controller.on_updated(
                    event.old_resource or event.resource, event.resource
                )
            elif event.event_type is EventType.DELETED:
                await self.controller.on_deleted(event.resource)
        except PersistenceError as e:
            logger.error(
                f"{event.event_type.value} {event.namespace}/{event.name}: "
                f"status not persisted: {e}"
            )
        except Exception as e:
            logger.error(
                f"Error handling {event.event_type.value} for "
                f"{event.namespace}/{event.name}: {e}",
                exc_info=True,
            )
