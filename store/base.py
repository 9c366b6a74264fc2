"""
Abstract conversation store.

The relay depends only on this interface. The fan-out core reads ids and
timestamps through it and never formats UI data.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .types import Channel, Conversation, Direction, Message


class ConversationStore(ABC):
    """
    Conversations and their messages.

    Implementations raise StoreUnavailableError / StoreTimeoutError for
    infrastructure failures and ConversationNotFoundError for unknown ids.
    """

    @abstractmethod
    def upsert_conversation(
        self,
        channel: Channel,
        external_id: str,
        source_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        updated_at: Optional[int] = None,
    ) -> Conversation:
        """Create the (external_id, channel) conversation or bump its updated_at."""
        raise NotImplementedError

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation:
        raise NotImplementedError

    @abstractmethod
    def find_conversation(self, channel: Channel, external_id: str) -> Optional[Conversation]:
        raise NotImplementedError

    @abstractmethod
    def list_conversations(self, limit: int = 40) -> list[Conversation]:
        """Most recently updated first."""
        raise NotImplementedError

    @abstractmethod
    def create_message(
        self,
        conversation_id: str,
        direction: Direction,
        text: str,
        timestamp: Optional[int] = None,
    ) -> Message:
        """
        Insert a message. Returns once committed.

        Timestamps only move forward within a conversation: a timestamp at or
        below the newest stored one is replaced by newest + 1 ms. The returned
        Message carries the stored value.
        """
        raise NotImplementedError

    @abstractmethod
    def list_messages(self, conversation_id: str) -> list[Message]:
        """Oldest first."""
        raise NotImplementedError

    @abstractmethod
    def list_messages_since(self, conversation_id: str, since: int) -> list[Message]:
        """Messages with timestamp strictly greater than `since`, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def touch_conversation(self, conversation_id: str, updated_at: Optional[int] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_read(self, conversation_id: str, read_at: Optional[int] = None) -> None:
        raise NotImplementedError
