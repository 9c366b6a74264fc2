"""
Conversation store types.

Pure data models. Timestamps are epoch milliseconds.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Channel(str, Enum):
    """Where a conversation lives on Meta's side."""
    WHATSAPP = "WA"
    MESSENGER = "FB"


class Direction(str, Enum):
    INBOUND = "in"
    OUTBOUND = "out"


class Conversation(BaseModel):
    """One customer thread on one channel."""

    id: str
    channel: Channel
    external_id: str = Field(..., description="Phone number (WA) or PSID (FB)")
    source_id: Optional[str] = Field(None, description="phone_number_id (WA) or Page id (FB)")
    customer_name: Optional[str] = None
    updated_at: int
    last_read_at: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.customer_name or self.external_id


class Message(BaseModel):
    """A single message in a conversation."""

    id: str
    conversation_id: str
    direction: Direction
    text: str
    timestamp: int
