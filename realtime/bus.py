"""
In-process event bus keyed by conversation id.

Delivery is modeled as a message placed on the listener's queue; the request
task that owns the listener reads from it. Registration returns the Listener
itself, which can cancel its own registration.

Every call, publish included, must come from the event loop that owns the
bus, so no lock is needed. Writers running on a worker thread return to the
loop before notifying (the Dispatcher is awaited from request handlers and
the change feed).
"""

import asyncio
import logging
import uuid
from typing import Optional

from .events import ChangeEvent, ConversationId

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class Listener:
    """
    One registration on the bus.

    Events for the conversation are queued in publish order. When the queue
    is full the oldest pending event is discarded: every event means
    "re-read the conversation", so the newest one is enough.
    """

    def __init__(self, bus: "EventBus", conversation_id: ConversationId, maxsize: int):
        self.id = uuid.uuid4().hex
        self.conversation_id = conversation_id
        self.active = True
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

    def deliver(self, event: ChangeEvent) -> None:
        if not self.active:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> ChangeEvent:
        """Wait for the next event."""
        return await self._queue.get()

    def get_nowait(self) -> Optional[ChangeEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        """Unregister from the bus. Safe to call any number of times."""
        self._bus.unsubscribe(self)

    def __repr__(self) -> str:
        return (
            f"Listener(id={self.id[:8]}, conversation={self.conversation_id}, "
            f"active={self.active}, pending={self.pending()})"
        )


class EventBus:
    """Process-local publish/subscribe for conversation change events."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._listeners: dict[ConversationId, dict[str, Listener]] = {}

    def subscribe(self, conversation_id: ConversationId) -> Listener:
        """Register a listener for one conversation."""
        if not conversation_id:
            raise ValueError("conversation_id is required")

        listener = Listener(self, conversation_id, self.queue_size)
        self._listeners.setdefault(conversation_id, {})[listener.id] = listener
        logger.debug(
            "Listener subscribed",
            extra={"conversation_id": conversation_id, "listener_id": listener.id},
        )
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener. Unknown or already removed handles are ignored."""
        listener.active = False
        bucket = self._listeners.get(listener.conversation_id)
        if not bucket or bucket.pop(listener.id, None) is None:
            return
        if not bucket:
            del self._listeners[listener.conversation_id]
        logger.debug(
            "Listener unsubscribed",
            extra={"conversation_id": listener.conversation_id, "listener_id": listener.id},
        )

    def publish(self, conversation_id: ConversationId, event: ChangeEvent) -> int:
        """
        Deliver an event to every listener currently registered for the id.

        Never blocks. Events with no listener are dropped: the bus only feeds
        live viewers, history comes from the conversation store.

        Returns:
            Number of listeners the event was queued for
        """
        if event.conversation_id != conversation_id:
            raise ValueError(
                f"Event for {event.conversation_id!r} published on {conversation_id!r}"
            )

        bucket = self._listeners.get(conversation_id)
        if not bucket:
            logger.debug("No listeners for conversation %s, event dropped", conversation_id)
            return 0

        listeners = list(bucket.values())
        for listener in listeners:
            listener.deliver(event)
        return len(listeners)

    def listener_count(self, conversation_id: Optional[ConversationId] = None) -> int:
        if conversation_id is not None:
            return len(self._listeners.get(conversation_id, {}))
        return sum(len(bucket) for bucket in self._listeners.values())

    def conversations(self) -> list[ConversationId]:
        """Conversation ids with at least one live listener."""
        return list(self._listeners.keys())
