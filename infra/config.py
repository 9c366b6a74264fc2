"""
Infrastructure configuration system.

Environment-based backend selection with sensible defaults.
Defaults run a single process with no PostgreSQL: events go straight onto
the in-process bus.
"""

import os
from dataclasses import dataclass
from typing import Literal, Optional

from realtime import ChangeFeed, EventBus, PostgresNotificationSource
from store import ConversationStore, SQLiteConversationStore


FeedBackendType = Literal["local", "postgres"]


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass
class RelayConfig:
    """Fan-out and storage configuration from environment."""

    # Feed
    feed_backend: FeedBackendType
    database_url: Optional[str]
    notify_channel: str
    backoff_base_seconds: float
    backoff_cap_seconds: float
    ping_interval_seconds: float
    connect_timeout_seconds: float

    # Subscriptions
    heartbeat_seconds: float
    poll_ceiling_ms: int
    stream_max_age_seconds: float
    listener_queue_size: int

    # Store
    sqlite_db_path: str

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        FEED_BACKEND defaults to 'postgres' when DATABASE_URL is set and to
        'local' otherwise.
        """
        database_url = os.getenv("DATABASE_URL") or None
        default_backend = "postgres" if database_url else "local"

        return cls(
            feed_backend=os.getenv("FEED_BACKEND", default_backend),  # type: ignore
            database_url=database_url,
            notify_channel=os.getenv("NOTIFY_CHANNEL", "new_msg"),
            backoff_base_seconds=_float_env("FEED_BACKOFF_BASE_SECONDS", 0.5),
            backoff_cap_seconds=_float_env("FEED_BACKOFF_CAP_SECONDS", 30.0),
            ping_interval_seconds=_float_env("FEED_PING_INTERVAL_SECONDS", 30.0),
            connect_timeout_seconds=_float_env("FEED_CONNECT_TIMEOUT_SECONDS", 10.0),

            heartbeat_seconds=_float_env("SSE_HEARTBEAT_SECONDS", 15.0),
            poll_ceiling_ms=_int_env("POLL_CEILING_MS", 30_000),
            stream_max_age_seconds=_float_env("STREAM_MAX_AGE_SECONDS", 0.0),
            listener_queue_size=_int_env("LISTENER_QUEUE_SIZE", 100),

            sqlite_db_path=os.getenv("SQLITE_DB_PATH", "./conversations.db"),
        )

    def validate(self) -> None:
        """
        Raises:
            ValueError: Inconsistent settings
        """
        if self.feed_backend not in ("local", "postgres"):
            raise ValueError(f"Unknown FEED_BACKEND: {self.feed_backend}")
        if self.feed_backend == "postgres" and not self.database_url:
            raise ValueError("FEED_BACKEND=postgres requires DATABASE_URL")
        if self.heartbeat_seconds <= 0:
            raise ValueError("SSE_HEARTBEAT_SECONDS must be positive")
        if self.poll_ceiling_ms <= 0:
            raise ValueError("POLL_CEILING_MS must be positive")

    def create_store(self) -> ConversationStore:
        """Create the conversation store."""
        return SQLiteConversationStore(db_path=self.sqlite_db_path)

    def create_bus(self) -> EventBus:
        return EventBus(queue_size=self.listener_queue_size)

    def create_feed(self, bus: EventBus) -> Optional[ChangeFeed]:
        """Create the cross-process feed, or None for a single process."""
        if self.feed_backend != "postgres":
            return None

        source = PostgresNotificationSource(
            dsn=_asyncpg_dsn(self.database_url or ""),
            channel=self.notify_channel,
            connect_timeout=self.connect_timeout_seconds,
            ping_interval=self.ping_interval_seconds,
        )
        return ChangeFeed(
            source,
            bus,
            backoff_base=self.backoff_base_seconds,
            backoff_cap=self.backoff_cap_seconds,
        )


def _asyncpg_dsn(url: str) -> str:
    """asyncpg only accepts postgresql:// / postgres:// schemes."""
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            return "postgresql://" + url[len(prefix):]
    return url


def get_config() -> RelayConfig:
    """Get relay configuration from the current environment."""
    return RelayConfig.from_env()
