"""In-process event bus for orchestration notifications.

Components receive the bus as a constructor argument and publish typed
OrchestrationEvents to it. Consumers either register a synchronous
handler callback or iterate a subscription asynchronously.

Publishing is synchronous: an event is fanned out to every matching
subscription within the same event-loop tick, so publishers never await.
Each subscription owns a bounded asyncio.Queue; when it is full the oldest
queued event is dropped so a slow consumer cannot grow memory unbounded.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import structlog

from src.agentmesh.events.schemas import EventType, OrchestrationEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[OrchestrationEvent], None]


@dataclass
class EventSubscription:
    """Subscription to events from the bus.

    Attributes:
        subscription_id: Unique identifier.
        event_types: Types to receive. None receives every type.
        execution_id: Only receive events for this execution.
        network_id: Only receive events for this network.
        handler: Optional callback invoked synchronously on publish.
    """

    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_types: set[EventType] | None = None
    execution_id: str | None = None
    network_id: str | None = None
    handler: EventHandler | None = None

    def matches(self, event: OrchestrationEvent) -> bool:
        """Check if an event matches this subscription."""
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.execution_id and event.execution_id != self.execution_id:
            return False
        if self.network_id and event.network_id != self.network_id:
            return False
        return True


class InMemoryEventBus:
    """Single-process event bus with bounded per-subscription queues.

    Args:
        max_queue_size: Capacity of each subscription queue.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscriptions: dict[str, EventSubscription] = {}
        self._queues: dict[str, asyncio.Queue[OrchestrationEvent | None]] = {}
        self._closed = False
        self._dropped = 0

    def publish(self, event: OrchestrationEvent) -> None:
        """Deliver an event to every matching subscription.

        Handler exceptions are logged and never propagate to the publisher.
        """
        if self._closed:
            return

        for sub_id, subscription in list(self._subscriptions.items()):
            if not subscription.matches(event):
                continue

            if subscription.handler is not None:
                try:
                    subscription.handler(event)
                except Exception as exc:
                    logger.warning(
                        "event_handler_failed",
                        subscription_id=sub_id,
                        event_type=event.event_type.value,
                        error=str(exc),
                    )

            queue = self._queues.get(sub_id)
            if queue is None:
                continue
            if queue.full():
                queue.get_nowait()
                self._dropped += 1
            queue.put_nowait(event)

    def emit(
        self,
        event_type: EventType,
        source: str,
        *,
        execution_id: str | None = None,
        network_id: str | None = None,
        **data,
    ) -> OrchestrationEvent:
        """Build and publish an event in one call.

        Returns:
            The published event.
        """
        event = OrchestrationEvent(
            event_type=event_type,
            source=source,
            execution_id=execution_id,
            network_id=network_id,
            data=data,
        )
        self.publish(event)
        return event

    def subscribe(
        self,
        event_types: set[EventType] | None = None,
        execution_id: str | None = None,
        network_id: str | None = None,
        handler: EventHandler | None = None,
    ) -> EventSubscription:
        """Create a subscription and return it.

        A subscription with a handler receives events through the callback
        only. A subscription without one is consumed with ``events()``.
        """
        subscription = EventSubscription(
            event_types=event_types,
            execution_id=execution_id,
            network_id=network_id,
            handler=handler,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        if handler is None:
            self._queues[subscription.subscription_id] = asyncio.Queue(
                maxsize=self._max_queue_size
            )
        return subscription

    async def events(self, subscription: EventSubscription) -> AsyncIterator[OrchestrationEvent]:
        """Iterate over events for a subscription.

        Yields events until the subscription is removed or the bus closes.
        """
        queue = self._queues.get(subscription.subscription_id)
        if queue is None:
            return

        while True:
            event = await queue.get()
            if event is None:
                break
            yield event

    def unsubscribe(self, subscription: EventSubscription) -> None:
        """Remove a subscription and unblock any waiting consumer."""
        sub_id = subscription.subscription_id
        self._subscriptions.pop(sub_id, None)
        queue = self._queues.pop(sub_id, None)
        if queue is not None:
            self._put_sentinel(queue)

    def close(self) -> None:
        """Close the bus and end every subscription."""
        self._closed = True
        for queue in self._queues.values():
            self._put_sentinel(queue)
        self._queues.clear()
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def dropped_events(self) -> int:
        """Number of events discarded because a subscription queue was full."""
        return self._dropped

    @staticmethod
    def _put_sentinel(queue: asyncio.Queue[OrchestrationEvent | None]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(None)
