"""
Change feed: bridges backing-store notifications into the EventBus.

One long-lived LISTEN connection per process keeps every server process's
bus in step. Writers NOTIFY through the same connection; PostgreSQL delivers
the notification to every listening session, this one included.

Connection loss is never fatal: the feed logs a warning, backs off
exponentially (bounded), reconnects and resumes listening. Events emitted
while disconnected are missed; fan-out is best-effort, the conversation
store stays the source of truth.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Callable, ClassVar, Optional

import asyncpg

from .bus import EventBus
from .events import ChangeEvent, MalformedEventError

logger = logging.getLogger(__name__)

# PostgreSQL rejects NOTIFY payloads of 8000 bytes or more
MAX_NOTIFY_PAYLOAD_BYTES = 7999

NotificationCallback = Callable[[str], None]


class FeedUnavailableError(Exception):
    """The notification connection is down."""
    pass


class FeedAlreadyRunningError(RuntimeError):
    """Another change feed is already running on this channel in this process."""
    pass


# ============================================================================
# NOTIFICATION SOURCES
# ============================================================================

class NotificationSource(ABC):
    """A backing-store notification channel (one connection)."""

    channel: str

    @abstractmethod
    async def connect(self, on_notification: NotificationCallback) -> None:
        """Open the connection and start listening on the channel."""
        raise NotImplementedError

    @abstractmethod
    async def wait_closed(self) -> None:
        """Suspend until the connection is lost. May raise the cause."""
        raise NotImplementedError

    @abstractmethod
    async def notify(self, payload: str) -> None:
        """Send a notification on the channel."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe when already closed."""
        raise NotImplementedError

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        raise NotImplementedError


class PostgresNotificationSource(NotificationSource):
    """
    LISTEN/NOTIFY over a dedicated asyncpg connection.

    asyncpg reports clean terminations through a termination listener; a
    periodic `SELECT 1` catches connections that died silently.
    """

    def __init__(
        self,
        dsn: str,
        channel: str = "new_msg",
        connect_timeout: float = 10.0,
        ping_interval: float = 30.0,
    ):
        self.dsn = dsn
        self.channel = channel
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self._conn: Optional[asyncpg.Connection] = None
        self._callback: Optional[NotificationCallback] = None
        self._lost = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return (
            self._conn is not None
            and not self._conn.is_closed()
            and not self._lost.is_set()
        )

    async def connect(self, on_notification: NotificationCallback) -> None:
        self._lost = asyncio.Event()
        self._callback = on_notification
        self._conn = await asyncpg.connect(self.dsn, timeout=self.connect_timeout)
        lost = self._lost
        self._conn.add_termination_listener(lambda connection: lost.set())
        await self._conn.add_listener(self.channel, self._on_notification)
        logger.info("Listening on PostgreSQL channel '%s'", self.channel)

    def _on_notification(self, connection, pid: int, channel: str, payload: str) -> None:
        if self._callback is not None:
            self._callback(payload)

    async def wait_closed(self) -> None:
        while not self._lost.is_set():
            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self.ping_interval)
            except asyncio.TimeoutError:
                await self._ping()
        raise ConnectionError("LISTEN connection terminated")

    async def _ping(self) -> None:
        if self._conn is None or self._conn.is_closed():
            self._lost.set()
            return
        try:
            async with self._lock:
                await asyncio.wait_for(self._conn.execute("SELECT 1"), timeout=self.connect_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError):
            self._lost.set()
            raise

    async def notify(self, payload: str) -> None:
        if not self.is_connected:
            raise FeedUnavailableError("Notification connection is not open")
        try:
            async with self._lock:
                await asyncio.wait_for(
                    self._conn.execute("SELECT pg_notify($1, $2)", self.channel, payload),
                    timeout=self.connect_timeout,
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise FeedUnavailableError(f"NOTIFY failed: {e}") from e

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        self._lost.set()
        if conn is None or conn.is_closed():
            return
        try:
            await conn.remove_listener(self.channel, self._on_notification)
            await conn.close(timeout=self.connect_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Closing LISTEN connection failed, terminating: %s", e)
            conn.terminate()


# ============================================================================
# CHANGE FEED
# ============================================================================

class ChangeFeed:
    """
    Keeps one notification connection alive and republishes what it hears.

    start() is idempotent. Only one feed may run per channel in a process;
    a second one would publish every event twice.
    """

    _running: ClassVar[dict[str, "ChangeFeed"]] = {}

    def __init__(
        self,
        source: NotificationSource,
        bus: EventBus,
        backoff_base: float = 0.5,
        backoff_cap: float = 30.0,
    ):
        self.source = source
        self.bus = bus
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.reconnects = 0
        self.malformed = 0
        self._task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._connected.is_set() and self.source.is_connected

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start listening in the background. No-op when already running."""
        if self.running:
            return

        owner = ChangeFeed._running.get(self.source.channel)
        if owner is not None and owner is not self and owner.running:
            raise FeedAlreadyRunningError(
                f"A change feed is already listening on '{self.source.channel}'"
            )

        ChangeFeed._running[self.source.channel] = self
        self._stopping = False
        self._task = asyncio.create_task(
            self._run(), name=f"change-feed:{self.source.channel}"
        )

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the feed is listening. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connected.clear()
        await self.source.close()
        if ChangeFeed._running.get(self.source.channel) is self:
            del ChangeFeed._running[self.source.channel]
        logger.info("Change feed on '%s' stopped", self.source.channel)

    async def publish(self, event: ChangeEvent) -> None:
        """
        NOTIFY the event to every process listening on the channel.

        Raises:
            FeedUnavailableError: Connection is down
        """
        if not self.connected:
            raise FeedUnavailableError(f"Change feed on '{self.source.channel}' is disconnected")

        payload = event.to_payload()
        if len(payload.encode("utf-8")) > MAX_NOTIFY_PAYLOAD_BYTES:
            payload = ChangeEvent(
                conversation_id=event.conversation_id,
                emitted_at=event.emitted_at,
            ).to_payload()
        await self.source.notify(payload)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for the given retry attempt, capped, with jitter."""
        delay = min(self.backoff_cap, self.backoff_base * (2 ** attempt))
        return min(self.backoff_cap, delay + random.uniform(0, delay * 0.25))

    def _on_notification(self, payload: str) -> None:
        try:
            event = ChangeEvent.from_payload(payload)
        except MalformedEventError as e:
            self.malformed += 1
            logger.warning(
                "Dropping malformed notification: %s",
                e,
                extra={"channel": self.source.channel},
            )
            return
        self.bus.publish(event.conversation_id, event)

    async def _run(self) -> None:
        attempt = 0
        while not self._stopping:
            try:
                await self.source.connect(self._on_notification)
                if attempt:
                    logger.info(
                        "Change feed reconnected after %d attempt(s)",
                        attempt,
                        extra={"channel": self.source.channel},
                    )
                attempt = 0
                self._connected.set()
                await self.source.wait_closed()
                error: BaseException = ConnectionError("notification connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e

            self._connected.clear()
            await self._close_source()
            if self._stopping:
                break

            delay = self.backoff_delay(attempt)
            attempt += 1
            self.reconnects += 1
            logger.warning(
                "Change feed connection lost (attempt %d), retrying in %.2fs: %s",
                attempt,
                delay,
                error,
                extra={"channel": self.source.channel},
            )
            await asyncio.sleep(delay)

    async def _close_source(self) -> None:
        try:
            await self.source.close()
        except Exception as e:
            logger.debug("Error while closing notification source: %s", e)
