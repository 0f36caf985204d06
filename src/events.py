"""
Event Streaming - In-memory pub/sub for managed resource events.

The controller subscribes to CREATED/MODIFIED/DELETED events to reconcile
as soon as desired state changes. RECONCILE_REQUESTED carries manual
triggers. The HTTP API streams all events as Server-Sent Events, similar
to the Kubernetes watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of resource events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"
    RECONCILE_REQUESTED = "RECONCILE_REQUESTED"

    @property
    def changes_desired_state(self) -> bool:
        """Whether events of this type come from a change to desired state."""
        return self in (EventType.CREATED, EventType.MODIFIED, EventType.DELETED)


@dataclass
class ResourceEvent:
    """Event emitted when a managed resource changes."""

    event_type: EventType
    resource_id: int
    resource_kind: str
    resource_namespace: str
    resource_name: str
    generation: int
    resource_data: Dict[str, Any]
    timestamp: str

    def to_sse(self) -> str:
        """Format the event as an SSE message."""
        data = {
            "event_type": self.event_type.value,
            "resource_id": self.resource_id,
            "resource_kind": self.resource_kind,
            "resource_namespace": self.resource_namespace,
            "resource_name": self.resource_name,
            "generation": self.generation,
            "resource_data": self.resource_data,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Dict[str, Any],
    ) -> "ResourceEvent":
        """
        Create an event from a parsed ``managed_resources`` row.

        Args:
            event_type: The type of event.
            resource: Resource dict from the database.
        """
        return cls(
            event_type=event_type,
            resource_id=resource["id"],
            resource_kind=resource["kind"],
            resource_namespace=resource.get("namespace", "default"),
            resource_name=resource["name"],
            generation=resource.get("generation", 0),
            resource_data=resource,
            timestamp=datetime.utcnow().isoformat() + "Z",
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
    non-blocking. Events for subscribers with full queues are dropped;
    the controller's periodic poll picks up anything a dropped event
    would have triggered.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        """Publish an event to all subscribers (non-blocking)."""
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for "
                    f"subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and end its subscription.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            self._send_sentinel(queue)
            logger.info(f"Unsubscribed: {subscriber_id}")

    async def close(self) -> None:
        """End every subscription (used at shutdown)."""
        async with self._lock:
            queues = list(self._subscribers.values())
            self._subscribers.clear()

        for queue in queues:
            self._send_sentinel(queue)

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)

    @staticmethod
    def _send_sentinel(queue: asyncio.Queue) -> None:
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room: the subscriber is going away, pending events are moot.
            queue.get_nowait()
            queue.put_nowait(None)
