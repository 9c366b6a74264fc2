"""
Dispatcher: the single call site writers use after a committed write.
"""

import logging
from typing import Any, Optional

from .bus import EventBus
from .events import ChangeEvent, ConversationId
from .feed import ChangeFeed, FeedUnavailableError

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Broadcasts "conversation changed" after a message is durably stored.

    Call notify_changed() only once the write has committed; a viewer that
    wakes earlier would re-read stale data.

    With a ChangeFeed the event goes out as a NOTIFY and comes back through
    the feed into the local bus, like it does for every other process.
    Without one (single process) it is published on the bus directly.
    """

    def __init__(self, bus: EventBus, feed: Optional[ChangeFeed] = None):
        self.bus = bus
        self.feed = feed

    async def notify_changed(
        self,
        conversation_id: ConversationId,
        summary: Optional[dict[str, Any]] = None,
    ) -> None:
        """Best-effort broadcast. Never raises for delivery failures."""
        event = ChangeEvent(conversation_id=conversation_id, summary=summary)

        if self.feed is None:
            delivered = self.bus.publish(conversation_id, event)
            logger.debug(
                "Change published locally",
                extra={"conversation_id": conversation_id, "listeners": delivered},
            )
            return

        try:
            await self.feed.publish(event)
            logger.debug("Change notified", extra={"conversation_id": conversation_id})
        except FeedUnavailableError as e:
            # local viewers still get it; other processes miss this one
            logger.warning(
                f"Change feed unavailable, publishing locally only: {e}",
                extra={"conversation_id": conversation_id},
            )
            self.bus.publish(conversation_id, event)
        except Exception as e:
            logger.error(
                f"Unexpected error notifying change: {e}",
                exc_info=True,
                extra={"conversation_id": conversation_id},
            )
            self.bus.publish(conversation_id, event)
