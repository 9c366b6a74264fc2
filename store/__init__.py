"""Conversation store - Module Exports"""

from .base import ConversationStore
from .errors import (
    ConversationNotFoundError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from .sqlite import SQLiteConversationStore
from .types import Channel, Conversation, Direction, Message

__all__ = [
    "ConversationStore",
    "SQLiteConversationStore",
    "Channel",
    "Conversation",
    "Direction",
    "Message",
    "StoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "ConversationNotFoundError",
]
