"""Pytest configuration and fixtures."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra import RelayBootstrap  # noqa: E402
from infra.config import RelayConfig  # noqa: E402
from main import create_app  # noqa: E402
from realtime import EventBus, FeedUnavailableError, NotificationSource  # noqa: E402
from store import Channel, SQLiteConversationStore  # noqa: E402


def make_config(**overrides) -> RelayConfig:
    """Single-process config with short timings."""
    values = dict(
        feed_backend="local",
        database_url=None,
        notify_channel="new_msg",
        backoff_base_seconds=0.01,
        backoff_cap_seconds=0.05,
        ping_interval_seconds=30.0,
        connect_timeout_seconds=1.0,
        heartbeat_seconds=15.0,
        poll_ceiling_ms=30_000,
        stream_max_age_seconds=0.0,
        listener_queue_size=100,
        sqlite_db_path=":memory:",
    )
    values.update(overrides)
    return RelayConfig(**values)


class FakeNotificationSource(NotificationSource):
    """
    In-memory stand-in for a LISTEN connection.

    notify() loops the payload back like PostgreSQL does for the sending
    session; drop() simulates the connection dying; fail_connects makes the
    next N connect attempts fail.
    """

    def __init__(self, channel: str = "new_msg", fail_connects: int = 0):
        self.channel = channel
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.sent: list[str] = []
        self._callback = None
        self._connected = False
        self._lost: Optional[asyncio.Event] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, on_notification) -> None:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionRefusedError("database is down")
        self._callback = on_notification
        self._lost = asyncio.Event()
        self._connected = True

    async def wait_closed(self) -> None:
        await self._lost.wait()
        raise ConnectionError("connection dropped")

    async def notify(self, payload: str) -> None:
        if not self._connected:
            raise FeedUnavailableError("not connected")
        self.sent.append(payload)
        asyncio.get_running_loop().call_soon(self._callback, payload)

    async def close(self) -> None:
        self._connected = False
        if self._lost is not None:
            self._lost.set()

    def drop(self) -> None:
        self._connected = False
        self._lost.set()

    def inject(self, payload: str) -> None:
        """Deliver a raw notification as if another process sent it."""
        self._callback(payload)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(tmp_path) -> SQLiteConversationStore:
    return SQLiteConversationStore(str(tmp_path / "conversations.db"))


@pytest.fixture
def conversation(store):
    return store.upsert_conversation(
        Channel.WHATSAPP,
        "96170123456",
        source_id="phone-id-1",
        customer_name="Rami",
        updated_at=1_000,
    )


@pytest.fixture
def fake_source():
    """Factory for FakeNotificationSource instances."""
    return FakeNotificationSource


@pytest.fixture
def relay_config():
    """Factory for RelayConfig with test-friendly defaults."""
    return make_config


@pytest.fixture
def relay(relay_config) -> RelayBootstrap:
    """Single-process relay on an in-memory store."""
    return RelayBootstrap(relay_config(), store=SQLiteConversationStore())


@pytest.fixture
def client(relay):
    """TestClient with the application lifespan running."""
    with TestClient(create_app(relay)) as test_client:
        yield test_client
