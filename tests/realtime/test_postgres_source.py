"""
PostgreSQL Notification Source Tests

LISTEN/NOTIFY adapter over a mocked asyncpg connection: listener hookup,
termination and ping failures ending wait_closed(), NOTIFY error mapping,
and close() falling back to terminate().
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from realtime import ChangeFeed, FeedUnavailableError, PostgresNotificationSource

DSN = "postgresql://relay@db/inbox"


def make_conn(execute=None) -> MagicMock:
    """Mock asyncpg connection; execute defaults to succeeding."""
    conn = MagicMock()
    conn.is_closed.return_value = False
    conn.add_listener = AsyncMock()
    conn.remove_listener = AsyncMock()
    conn.close = AsyncMock()
    conn.execute = execute or AsyncMock(return_value="SELECT 1")
    return conn


def make_source(**kwargs) -> PostgresNotificationSource:
    kwargs.setdefault("connect_timeout", 1.0)
    return PostgresNotificationSource(DSN, **kwargs)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestConnect:
    """Connection setup and notification delivery."""

    @pytest.mark.asyncio
    async def test_listens_on_channel(self):
        conn = make_conn()
        source = make_source(channel="inbox_changes")
        received = []

        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)) as connect:
            await source.connect(received.append)

        connect.assert_awaited_once_with(DSN, timeout=1.0)
        conn.add_listener.assert_awaited_once_with("inbox_changes", source._on_notification)
        conn.add_termination_listener.assert_called_once()
        assert source.is_connected

        deliver = conn.add_listener.call_args.args[1]
        deliver(conn, 4242, "inbox_changes", '{"conversation_id":"c1"}')

        assert received == ['{"conversation_id":"c1"}']

    @pytest.mark.asyncio
    async def test_termination_ends_wait_closed(self):
        conn = make_conn()
        source = make_source()

        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)

        waiter = asyncio.create_task(source.wait_closed())
        await asyncio.sleep(0)
        terminated = conn.add_termination_listener.call_args.args[0]
        terminated(conn)

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(waiter, timeout=1.0)
        assert not source.is_connected

    @pytest.mark.asyncio
    async def test_stale_termination_does_not_affect_new_connection(self):
        first, second = make_conn(), make_conn()
        source = make_source()

        with patch("realtime.feed.asyncpg.connect", AsyncMock(side_effect=[first, second])):
            await source.connect(lambda payload: None)
            await source.close()
            await source.connect(lambda payload: None)

        first.add_termination_listener.call_args.args[0](first)

        assert source.is_connected


class TestPing:
    """Silent connection death is caught by the periodic SELECT 1."""

    @pytest.mark.asyncio
    async def test_failed_ping_ends_wait_closed(self):
        conn = make_conn(execute=AsyncMock(side_effect=ConnectionResetError("reset by peer")))
        source = make_source(ping_interval=0.01)

        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)

        with pytest.raises(ConnectionResetError):
            await asyncio.wait_for(source.wait_closed(), timeout=1.0)

        conn.execute.assert_awaited_with("SELECT 1")
        assert not source.is_connected

    @pytest.mark.asyncio
    async def test_ping_on_closed_connection(self):
        conn = make_conn()
        source = make_source(ping_interval=0.01)

        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)
        conn.is_closed.return_value = True

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(source.wait_closed(), timeout=1.0)

        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_healthy_pings_keep_waiting(self):
        conn = make_conn()
        source = make_source(ping_interval=0.01)

        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(source.wait_closed(), timeout=0.1)

        assert conn.execute.await_count >= 2
        assert source.is_connected

    @pytest.mark.asyncio
    async def test_feed_reconnects_after_failed_ping(self, bus):
        dead = make_conn(execute=AsyncMock(side_effect=ConnectionResetError("reset by peer")))
        fresh = make_conn()
        source = make_source(channel="pg-reconnect", ping_interval=0.01)
        feed = ChangeFeed(source, bus, backoff_base=0.01, backoff_cap=0.05)
        listener = bus.subscribe("c1")

        with patch("realtime.feed.asyncpg.connect", AsyncMock(side_effect=[dead, fresh])) as connect:
            await feed.start()
            try:
                await wait_until(lambda: connect.await_count == 2 and feed.connected)

                deliver = fresh.add_listener.call_args.args[1]
                deliver(fresh, 1, "pg-reconnect", '{"conversation_id":"c1","emitted_at":5}')
            finally:
                await feed.stop()

        assert feed.reconnects == 1
        dead.close.assert_awaited_once()
        fresh.close.assert_awaited_once()
        received = listener.get_nowait()
        assert received.conversation_id == "c1"
        assert received.emitted_at == 5


class TestNotify:
    """NOTIFY through pg_notify and error mapping."""

    async def _connected(self, conn, **kwargs) -> PostgresNotificationSource:
        source = make_source(**kwargs)
        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)
        return source

    @pytest.mark.asyncio
    async def test_sends_pg_notify(self):
        conn = make_conn()
        source = await self._connected(conn, channel="new_msg")

        await source.notify('{"conversation_id":"c1"}')

        conn.execute.assert_awaited_once_with(
            "SELECT pg_notify($1, $2)", "new_msg", '{"conversation_id":"c1"}'
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        asyncpg.InterfaceError("connection is closed"),
        ConnectionResetError("reset by peer"),
    ])
    async def test_driver_errors_become_unavailable(self, error):
        source = await self._connected(make_conn(execute=AsyncMock(side_effect=error)))

        with pytest.raises(FeedUnavailableError) as exc_info:
            await source.notify("c1")

        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_slow_notify_times_out(self):
        async def hang(*args):
            await asyncio.sleep(5)

        source = await self._connected(make_conn(execute=AsyncMock(side_effect=hang)), connect_timeout=0.05)

        with pytest.raises(FeedUnavailableError):
            await asyncio.wait_for(source.notify("c1"), timeout=1.0)

    @pytest.mark.asyncio
    async def test_not_connected(self):
        with pytest.raises(FeedUnavailableError):
            await make_source().notify("c1")

    @pytest.mark.asyncio
    async def test_after_termination(self):
        conn = make_conn()
        source = await self._connected(conn)
        conn.add_termination_listener.call_args.args[0](conn)

        with pytest.raises(FeedUnavailableError):
            await source.notify("c1")

        conn.execute.assert_not_awaited()


class TestClose:
    """Releasing the LISTEN connection."""

    async def _connected(self, conn) -> PostgresNotificationSource:
        source = make_source()
        with patch("realtime.feed.asyncpg.connect", AsyncMock(return_value=conn)):
            await source.connect(lambda payload: None)
        return source

    @pytest.mark.asyncio
    async def test_unlistens_and_closes(self):
        conn = make_conn()
        source = await self._connected(conn)

        await source.close()

        conn.remove_listener.assert_awaited_once_with("new_msg", source._on_notification)
        conn.close.assert_awaited_once_with(timeout=1.0)
        conn.terminate.assert_not_called()
        assert not source.is_connected

    @pytest.mark.asyncio
    async def test_failed_close_terminates(self):
        conn = make_conn()
        conn.close = AsyncMock(side_effect=asyncpg.InterfaceError("connection is closed"))
        source = await self._connected(conn)

        await source.close()

        conn.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_already_closed_connection(self):
        conn = make_conn()
        source = await self._connected(conn)
        conn.is_closed.return_value = True

        await source.close()
        await source.close()

        conn.remove_listener.assert_not_awaited()
        conn.close.assert_not_awaited()
        conn.terminate.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_before_connect(self):
        await make_source().close()
