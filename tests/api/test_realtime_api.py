"""
Realtime Endpoint Tests

/stream (server-sent events) and /poll (immediate and long-poll).

Streams are opened with a maximum age so the response ends on its own and
the TestClient can read the whole body. Updates are produced by real reply
requests sent from a second thread, so events reach the bus the same way
they do in production: on the event loop, through the Dispatcher.
"""

import asyncio
import json
import threading
import time
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.realtime import CLIENT_CLOSED_REQUEST, poll
from infra import RelayBootstrap
from main import create_app
from store import Channel, Direction, SQLiteConversationStore
from transport.meta.schemas import SendResult


def seed(relay):
    return relay.store.upsert_conversation(Channel.WHATSAPP, "96170123456", "pn-1", None, 1_000)


def sent_reply():
    return patch(
        "api.conversations.send_message",
        AsyncMock(return_value=SendResult(
            channel=Channel.WHATSAPP, recipient="96170123456", message_id="wamid.out"
        )),
    )


def poll_scope(conversation_id: str) -> dict:
    query = f"conversation={conversation_id}&since=1000&wait=true&timeout=3000"
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/poll",
        "raw_path": b"/poll",
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(b"host", b"testserver")],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }


def disconnecting_receive(gone: asyncio.Event):
    """ASGI receive: the request once, then http.disconnect after `gone` is set."""
    requested = False

    async def receive() -> dict:
        nonlocal requested
        if not requested:
            requested = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await gone.wait()
        return {"type": "http.disconnect"}

    return receive


async def wait_for_listener(relay, timeout: float = 1.0) -> None:
    deadline = time.monotonic() + timeout
    while relay.bus.listener_count() == 0:
        assert time.monotonic() < deadline, "long-poll never subscribed"
        await asyncio.sleep(0.01)


class TestPoll:

    def test_immediate_poll_returns_newer_messages(self, client, relay):
        conversation = seed(relay)
        relay.store.create_message(conversation.id, Direction.INBOUND, "old", 1_000)
        relay.store.create_message(conversation.id, Direction.INBOUND, "new", 2_000)

        response = client.get("/poll", params={"conversation": conversation.id, "since": 1_000})

        assert response.status_code == 200
        body = response.json()
        assert [m["text"] for m in body["messages"]] == ["new"]
        assert body["cursor"] == 2_000
        assert body["timed_out"] is False

    def test_immediate_poll_empty_keeps_cursor(self, client, relay):
        conversation = seed(relay)

        body = client.get("/poll", params={"conversation": conversation.id, "since": 5_000}).json()

        assert body == {"messages": [], "timed_out": False, "cursor": 5_000}

    def test_long_poll_times_out_with_200(self, client, relay):
        conversation = seed(relay)

        started = time.monotonic()
        response = client.get(
            "/poll",
            params={"conversation": conversation.id, "since": 1_000, "wait": "true", "timeout": 100},
        )
        elapsed = time.monotonic() - started

        assert response.status_code == 200
        assert response.json()["timed_out"] is True
        assert response.json()["messages"] == []
        assert elapsed < 2.0
        assert relay.bus.listener_count() == 0

    def test_long_poll_returns_existing_messages_without_waiting(self, client, relay):
        conversation = seed(relay)
        relay.store.create_message(conversation.id, Direction.INBOUND, "waiting", 1_500)

        started = time.monotonic()
        response = client.get(
            "/poll",
            params={"conversation": conversation.id, "since": 1_000, "wait": "true", "timeout": 5_000},
        )

        assert time.monotonic() - started < 2.0
        assert [m["text"] for m in response.json()["messages"]] == ["waiting"]

    def test_long_poll_woken_by_reply(self, client, relay):
        conversation = seed(relay)
        replies = []

        def send_reply():
            replies.append(client.post(f"/conversations/{conversation.id}/reply", json={"text": "reply"}))

        timer = threading.Timer(0.2, send_reply)
        with sent_reply():
            timer.start()
            started = time.monotonic()
            try:
                response = client.get(
                    "/poll",
                    params={"conversation": conversation.id, "since": 1_000, "wait": "true", "timeout": 10_000},
                )
            finally:
                timer.join()

        assert time.monotonic() - started < 5.0
        assert replies[0].status_code == 200
        body = response.json()
        assert body["timed_out"] is False
        assert [m["text"] for m in body["messages"]] == ["reply"]
        assert body["cursor"] == relay.store.list_messages(conversation.id)[-1].timestamp
        assert relay.bus.listener_count() == 0

    def test_unknown_conversation_404(self, client):
        response = client.get("/poll", params={"conversation": "missing", "wait": "true", "timeout": 50})
        assert response.status_code == 404

    def test_conversation_required(self, client):
        assert client.get("/poll").status_code == 422


class TestPollDisconnect:
    """A long-poll whose client goes away releases its subscription at once."""

    @pytest.mark.asyncio
    async def test_handler_returns_client_closed(self, relay):
        conversation = seed(relay)
        gone = asyncio.Event()
        request = Request(poll_scope(conversation.id), disconnecting_receive(gone))

        task = asyncio.create_task(poll(
            request,
            conversation=conversation.id,
            since=1_000,
            wait=True,
            timeout=3_000,
            store=relay.store,
            subscriptions=relay.subscriptions,
        ))
        await wait_for_listener(relay)
        gone.set()
        response = await asyncio.wait_for(task, timeout=1.0)

        assert response.status_code == CLIENT_CLOSED_REQUEST
        assert relay.bus.listener_count() == 0
        assert relay.subscriptions.active_count() == 0

    @pytest.mark.asyncio
    async def test_disconnect_through_app_releases_listener(self, relay):
        conversation = seed(relay)
        app = create_app(relay)
        app.state.relay = relay
        gone = asyncio.Event()
        sent = []

        async def send(message: dict) -> None:
            sent.append(message)

        call = asyncio.create_task(app(poll_scope(conversation.id), disconnecting_receive(gone), send))
        await wait_for_listener(relay)
        assert relay.subscriptions.active_count() == 1

        started = time.monotonic()
        gone.set()
        await asyncio.wait_for(call, timeout=1.0)

        assert time.monotonic() - started < 1.0
        assert relay.bus.listener_count() == 0
        assert relay.subscriptions.active_count() == 0
        assert not any(
            m["type"] == "http.response.start" and m["status"] == 200 for m in sent
        )


class TestStream:

    def _relay(self, relay_config, **overrides):
        return RelayBootstrap(relay_config(**overrides), store=SQLiteConversationStore())

    def test_stream_headers_and_heartbeats(self, relay_config):
        relay = self._relay(relay_config, heartbeat_seconds=0.1, stream_max_age_seconds=0.35)
        conversation = seed(relay)

        with TestClient(create_app(relay)) as client:
            response = client.get("/stream", params={"conversation": conversation.id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.text.startswith(": connected\n\n")
        assert response.text.count(": keep-alive\n\n") >= 2
        assert relay.bus.listener_count() == 0
        assert relay.subscriptions.active_count() == 0

    def test_stream_delivers_reply(self, relay_config):
        relay = self._relay(relay_config, heartbeat_seconds=5.0, stream_max_age_seconds=0.6)
        conversation = seed(relay)

        with TestClient(create_app(relay)) as client:
            def send_reply():
                client.post(f"/conversations/{conversation.id}/reply", json={"text": "reply"})

            timer = threading.Timer(0.2, send_reply)
            with sent_reply():
                timer.start()
                try:
                    response = client.get("/stream", params={"conversation": conversation.id})
                finally:
                    timer.join()

        frames = [frame for frame in response.text.split("\n\n") if frame]
        assert frames[0] == ": connected"
        assert frames[1].startswith("event: update\ndata: ")
        update = json.loads(frames[1].split("data: ", 1)[1])
        assert update["conversation_id"] == conversation.id
        assert update["summary"]["direction"] == "out"
        assert ": keep-alive" not in frames
        assert relay.bus.listener_count() == 0

    def test_stream_unknown_conversation_404(self, client):
        response = client.get("/stream", params={"conversation": "missing"})
        assert response.status_code == 404
