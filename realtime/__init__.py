"""Realtime fan-out - Module Exports"""

from .bus import EventBus, Listener
from .dispatcher import Dispatcher
from .events import ChangeEvent, ConversationId, MalformedEventError
from .feed import (
    ChangeFeed,
    FeedAlreadyRunningError,
    FeedUnavailableError,
    NotificationSource,
    PostgresNotificationSource,
)
from .subscriptions import (
    EventStream,
    PollResult,
    StreamMessage,
    Subscription,
    SubscriptionKind,
    SubscriptionManager,
    SubscriptionState,
)

__all__ = [
    # Events
    "ChangeEvent",
    "ConversationId",
    "MalformedEventError",
    # Bus
    "EventBus",
    "Listener",
    # Feed
    "ChangeFeed",
    "NotificationSource",
    "PostgresNotificationSource",
    "FeedUnavailableError",
    "FeedAlreadyRunningError",
    # Subscriptions
    "SubscriptionManager",
    "Subscription",
    "SubscriptionKind",
    "SubscriptionState",
    "EventStream",
    "StreamMessage",
    "PollResult",
    # Dispatcher
    "Dispatcher",
]
