"""
Change events.

A ChangeEvent says "conversation X changed, go re-read it". It is never
persisted and carries at most a small summary of what changed.
"""

import json
import time
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

ConversationId = str


class MalformedEventError(ValueError):
    """Notification payload could not be turned into a ChangeEvent."""
    pass


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ChangeEvent(BaseModel):
    """A conversation changed."""

    conversation_id: ConversationId = Field(..., min_length=1)
    emitted_at: int = Field(default_factory=now_ms, description="Epoch ms")
    summary: Optional[dict[str, Any]] = None

    class Config:
        frozen = True

    def to_payload(self) -> str:
        """Serialize for a NOTIFY payload or an SSE data line."""
        return json.dumps(
            {
                "conversation_id": self.conversation_id,
                "emitted_at": self.emitted_at,
                "summary": self.summary,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_payload(cls, payload: Optional[str]) -> "ChangeEvent":
        """
        Parse a notification payload.

        Accepts the JSON object produced by to_payload() as well as a bare
        conversation id, which is what plain `NOTIFY new_msg, '<id>'` sends.

        Raises:
            MalformedEventError: Empty payload or unexpected shape
        """
        if payload is None or not payload.strip():
            raise MalformedEventError("Empty notification payload")

        text = payload.strip()
        if not text.startswith("{"):
            if any(ch in text for ch in "[]\"\n"):
                raise MalformedEventError(f"Unexpected payload: {text[:80]!r}")
            return cls(conversation_id=text)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"Invalid JSON payload: {e}")

        if not isinstance(data, dict):
            raise MalformedEventError("Payload is not an object")

        if data.get("emitted_at") is None:
            data.pop("emitted_at", None)

        try:
            return cls(**data)
        except (ValidationError, TypeError) as e:
            raise MalformedEventError(f"Invalid event fields: {e}")
