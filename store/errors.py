"""Conversation store errors."""


class StoreError(Exception):
    """Conversation store failure."""
    pass


class StoreUnavailableError(StoreError):
    """Store cannot be reached or is broken."""
    pass


class StoreTimeoutError(StoreError):
    """Store did not answer in time (locked, busy)."""
    pass


class ConversationNotFoundError(StoreError):
    """No conversation with that id."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
