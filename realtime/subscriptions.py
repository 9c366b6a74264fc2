"""
Client subscriptions: server-sent-event streams and long-poll waiters.

Every subscription is an explicit record, looked up by a generated id, that
owns its bus listener, its deadline and its cancellation token. Nothing is
attached to the transport object. Whatever way a subscription ends (event,
timeout, client disconnect, shutdown) its listener is released.

Long-poll waiter states:

    PENDING -> RESOLVED_BY_EVENT | RESOLVED_BY_TIMEOUT | CANCELLED

All three outcomes are terminal.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from store.base import ConversationStore
from store.types import Message

from .bus import EventBus, Listener
from .events import ChangeEvent, ConversationId

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_SECONDS = 15.0
DEFAULT_POLL_CEILING_MS = 30_000


class SubscriptionKind(str, Enum):
    STREAM = "stream"
    LONG_POLL = "long_poll"


class SubscriptionState(str, Enum):
    OPEN = "open"                                # stream delivering
    PENDING = "pending"                          # long-poll waiting
    RESOLVED_BY_EVENT = "resolved_by_event"
    RESOLVED_BY_TIMEOUT = "resolved_by_timeout"
    CANCELLED = "cancelled"
    CLOSED = "closed"                            # stream ended

    @property
    def terminal(self) -> bool:
        return self not in (SubscriptionState.OPEN, SubscriptionState.PENDING)


@dataclass
class Subscription:
    """One client's interest in one conversation."""

    conversation_id: ConversationId
    kind: SubscriptionKind
    listener: Listener
    state: SubscriptionState
    expires_at: Optional[float] = None            # loop.time() deadline
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)

    def remaining(self, now: float) -> Optional[float]:
        """Seconds left before expiry, or None when it never expires."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - now)

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class PollResult:
    """Outcome of a long-poll request."""

    state: SubscriptionState
    messages: list[Message] = field(default_factory=list)
    event: Optional[ChangeEvent] = None

    @property
    def timed_out(self) -> bool:
        return self.state == SubscriptionState.RESOLVED_BY_TIMEOUT


@dataclass(frozen=True)
class StreamMessage:
    """One item written to a stream: a change or a keep-alive."""

    kind: str                                    # "update" | "heartbeat"
    event: Optional[ChangeEvent] = None

    @property
    def is_heartbeat(self) -> bool:
        return self.kind == "heartbeat"


async def _next_event(subscription: Subscription, timeout: Optional[float]) -> Optional[ChangeEvent]:
    """
    Wait for the subscription's next event.

    Returns None on timeout or when the cancellation token fires.
    """
    event = subscription.listener.get_nowait()
    if event is not None or subscription.cancel_token.is_set():
        return event

    get_task = asyncio.ensure_future(subscription.listener.get())
    token_task = asyncio.ensure_future(subscription.cancel_token.wait())
    try:
        await asyncio.wait(
            {get_task, token_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        token_task.cancel()
        if not get_task.done():
            get_task.cancel()

    if get_task.done() and not get_task.cancelled():
        return get_task.result()
    return None


class EventStream:
    """
    Async iterator over one SSE subscription.

    Yields an update per published event and a heartbeat on a fixed
    schedule. Ends when closed, cancelled or past its maximum age; in every
    case the bus listener is released.
    """

    def __init__(self, manager: "SubscriptionManager", subscription: Subscription, heartbeat_interval: float):
        self._manager = manager
        self.subscription = subscription
        self.heartbeat_interval = heartbeat_interval
        self._next_heartbeat: Optional[float] = None

    @property
    def id(self) -> str:
        return self.subscription.id

    @property
    def closed(self) -> bool:
        return self.subscription.state.terminal

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamMessage:
        loop = asyncio.get_running_loop()
        if self._next_heartbeat is None:
            self._next_heartbeat = loop.time() + self.heartbeat_interval

        while True:
            if self.closed or self.subscription.cancel_token.is_set():
                self.close()
                raise StopAsyncIteration

            now = loop.time()
            if self.subscription.expired(now):
                logger.debug("Stream %s reached its maximum age", self.id[:8])
                self.close()
                raise StopAsyncIteration

            wait = max(0.0, self._next_heartbeat - now)
            remaining = self.subscription.remaining(now)
            if remaining is not None:
                wait = min(wait, remaining)

            try:
                event = await _next_event(self.subscription, wait)
            except asyncio.CancelledError:
                self.close()
                raise

            if event is not None:
                return StreamMessage(kind="update", event=event)

            now = loop.time()
            if now >= self._next_heartbeat and not self.subscription.cancel_token.is_set():
                while self._next_heartbeat <= now:
                    self._next_heartbeat += self.heartbeat_interval
                return StreamMessage(kind="heartbeat")

    def close(self) -> None:
        """Release the subscription. Idempotent."""
        self._manager._finish(self.subscription, SubscriptionState.CLOSED)

    async def aclose(self) -> None:
        self.close()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class SubscriptionManager:
    """
    Serves the two client-facing contracts on top of the EventBus.

    Streams and long-poll waiters never open infrastructure connections of
    their own; they only register bus listeners.
    """

    def __init__(
        self,
        bus: EventBus,
        store: ConversationStore,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        poll_ceiling_ms: int = DEFAULT_POLL_CEILING_MS,
        stream_max_age: Optional[float] = None,
    ):
        if heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        self.bus = bus
        self.store = store
        self.heartbeat_interval = heartbeat_interval
        self.poll_ceiling_ms = poll_ceiling_ms
        self.stream_max_age = stream_max_age or None
        self._subscriptions: dict[str, Subscription] = {}

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def active_count(self, kind: Optional[SubscriptionKind] = None) -> int:
        return sum(
            1 for sub in self._subscriptions.values()
            if kind is None or sub.kind == kind
        )

    def _register(self, conversation_id: ConversationId, kind: SubscriptionKind, ttl: Optional[float]) -> Subscription:
        listener = self.bus.subscribe(conversation_id)
        expires_at = None
        if ttl is not None:
            expires_at = asyncio.get_running_loop().time() + ttl
        subscription = Subscription(
            conversation_id=conversation_id,
            kind=kind,
            listener=listener,
            state=SubscriptionState.OPEN if kind == SubscriptionKind.STREAM else SubscriptionState.PENDING,
            expires_at=expires_at,
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    def _finish(self, subscription: Subscription, state: SubscriptionState) -> bool:
        """Move to a terminal state and release the listener. First call wins."""
        subscription.listener.cancel()
        self._subscriptions.pop(subscription.id, None)
        if subscription.state.terminal:
            return False
        subscription.state = state
        logger.debug(
            "Subscription finished",
            extra={
                "subscription_id": subscription.id,
                "conversation_id": subscription.conversation_id,
                "kind": subscription.kind.value,
                "state": state.value,
            },
        )
        return True

    async def close_all(self) -> int:
        """Wake and end every subscription (shutdown)."""
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.cancel_token.set()
        await asyncio.sleep(0)
        for subscription in subscriptions:
            self._finish(
                subscription,
                SubscriptionState.CLOSED if subscription.kind == SubscriptionKind.STREAM
                else SubscriptionState.CANCELLED,
            )
        return len(subscriptions)

    # ------------------------------------------------------------------
    # streaming contract
    # ------------------------------------------------------------------

    def open_stream(self, conversation_id: ConversationId) -> EventStream:
        """Register a live stream for a conversation. Must run on the event loop."""
        subscription = self._register(conversation_id, SubscriptionKind.STREAM, self.stream_max_age)
        logger.info(
            "Stream opened",
            extra={"subscription_id": subscription.id, "conversation_id": conversation_id},
        )
        return EventStream(self, subscription, self.heartbeat_interval)

    # ------------------------------------------------------------------
    # long-poll contract
    # ------------------------------------------------------------------

    async def fetch_since(self, conversation_id: ConversationId, since: int) -> list[Message]:
        """Messages newer than `since`, straight from the store."""
        return await asyncio.to_thread(self.store.list_messages_since, conversation_id, since)

    def clamp_timeout(self, timeout_ms: Optional[int]) -> int:
        if timeout_ms is None:
            return self.poll_ceiling_ms
        return max(0, min(int(timeout_ms), self.poll_ceiling_ms))

    async def wait_for_update(
        self,
        conversation_id: ConversationId,
        since: int,
        timeout_ms: Optional[int] = None,
    ) -> PollResult:
        """
        Hold until the conversation has something newer than `since`.

        The listener is registered before the store is queried, so a message
        committed between the query and the wait still wakes the waiter.

        Args:
            conversation_id: Conversation to watch
            since: Epoch ms; only messages strictly newer count
            timeout_ms: Wait budget, capped at the poll ceiling

        Returns:
            PollResult with the new messages, or empty on timeout
        """
        timeout_s = self.clamp_timeout(timeout_ms) / 1000.0
        subscription = self._register(conversation_id, SubscriptionKind.LONG_POLL, timeout_s)
        loop = asyncio.get_running_loop()

        try:
            messages = await self.fetch_since(conversation_id, since)
            if messages:
                self._finish(subscription, SubscriptionState.RESOLVED_BY_EVENT)
                return PollResult(state=SubscriptionState.RESOLVED_BY_EVENT, messages=messages)

            event = await _next_event(subscription, subscription.remaining(loop.time()))

            if event is None:
                if subscription.cancel_token.is_set():
                    self._finish(subscription, SubscriptionState.CANCELLED)
                    return PollResult(state=SubscriptionState.CANCELLED)
                self._finish(subscription, SubscriptionState.RESOLVED_BY_TIMEOUT)
                return PollResult(state=SubscriptionState.RESOLVED_BY_TIMEOUT)

            self._finish(subscription, SubscriptionState.RESOLVED_BY_EVENT)
            messages = await self.fetch_since(conversation_id, since)
            return PollResult(
                state=SubscriptionState.RESOLVED_BY_EVENT,
                messages=messages,
                event=event,
            )

        except asyncio.CancelledError:
            self._finish(subscription, SubscriptionState.CANCELLED)
            raise
        finally:
            # store failures land here too
            self._finish(subscription, SubscriptionState.CANCELLED)
