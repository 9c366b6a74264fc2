"""
Infrastructure initialization and bootstrap.

The composition root: builds the store, bus, feed, dispatcher and
subscription manager once, at startup, and hands the same instances to every
request handler through app.state.
"""

import logging
from typing import Optional

from realtime import ChangeFeed, Dispatcher, EventBus, SubscriptionManager
from store import ConversationStore

from .config import RelayConfig, get_config

logger = logging.getLogger(__name__)


class RelayBootstrap:
    """
    Owns every long-lived relay component.

    Components may be passed in (tests); anything missing is created from
    the configuration.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        store: Optional[ConversationStore] = None,
        bus: Optional[EventBus] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        """Initialize bootstrap with configuration."""
        self.config = config or get_config()
        self.config.validate()

        self.store = store or self.config.create_store()
        self.bus = bus or self.config.create_bus()
        self.feed = feed if feed is not None else self.config.create_feed(self.bus)
        self.dispatcher = Dispatcher(self.bus, self.feed)
        self.subscriptions = SubscriptionManager(
            self.bus,
            self.store,
            heartbeat_interval=self.config.heartbeat_seconds,
            poll_ceiling_ms=self.config.poll_ceiling_ms,
            stream_max_age=self.config.stream_max_age_seconds or None,
        )
        self._started = False

    @property
    def feed_connected(self) -> Optional[bool]:
        """None when running without a feed."""
        return self.feed.connected if self.feed is not None else None

    async def start(self) -> None:
        """Start the change feed. Idempotent."""
        if self._started:
            return
        if self.feed is not None:
            await self.feed.start()
            logger.info(f"Change feed starting on channel '{self.config.notify_channel}'")
        else:
            logger.info("No change feed configured, fan-out is process-local")
        self._started = True

    async def stop(self) -> None:
        closed = await self.subscriptions.close_all()
        if closed:
            logger.info(f"Closed {closed} open subscription(s)")
        if self.feed is not None:
            await self.feed.stop()
        self._started = False

    def __repr__(self) -> str:
        """String representation showing configured backends."""
        return (
            f"RelayBootstrap(feed={self.config.feed_backend}, "
            f"store={type(self.store).__name__}, "
            f"heartbeat={self.config.heartbeat_seconds}s, "
            f"poll_ceiling={self.config.poll_ceiling_ms}ms)"
        )
