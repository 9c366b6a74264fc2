"""
Realtime endpoints for dashboard viewers.

- GET /stream  server-sent events: one `update` per change, keep-alive comments
- GET /poll    immediate read or long-poll, capped at the poll ceiling
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse

from realtime import StreamMessage, SubscriptionManager
from store import ConversationStore, Message

from .deps import get_store, get_subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

# nginx "client closed request"
CLIENT_CLOSED_REQUEST = 499


def format_sse(message: StreamMessage) -> str:
    """Encode one stream item in SSE wire format."""
    if message.is_heartbeat:
        return ": keep-alive\n\n"
    return f"event: update\ndata: {message.event.to_payload()}\n\n"


async def sse_frames(subscriptions: SubscriptionManager, conversation_id: str) -> AsyncIterator[str]:
    """
    SSE body for one viewer.

    The subscription is registered when the response starts streaming and
    released in `finally`, which also runs when Starlette cancels the
    response on client disconnect.
    """
    stream = subscriptions.open_stream(conversation_id)
    try:
        yield ": connected\n\n"
        async for message in stream:
            yield format_sse(message)
    except asyncio.CancelledError:
        logger.debug(
            "Stream client disconnected",
            extra={"subscription_id": stream.id, "conversation_id": conversation_id},
        )
        raise
    finally:
        stream.close()


@router.get("/stream")
async def stream(
    conversation: str = Query(..., min_length=1),
    store: ConversationStore = Depends(get_store),
    subscriptions: SubscriptionManager = Depends(get_subscriptions),
) -> StreamingResponse:
    """
    Open a live event stream for one conversation.

    Each change yields:
    ```
    event: update
    data: {"conversation_id": "...", "emitted_at": 1718000000000, "summary": {...}}
    ```
    and an idle stream gets a `: keep-alive` comment every heartbeat interval.
    """
    await asyncio.to_thread(store.get_conversation, conversation)

    return StreamingResponse(
        sse_frames(subscriptions, conversation),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def _poll_body(messages: list[Message], since: int, timed_out: bool) -> dict:
    cursor = max((m.timestamp for m in messages), default=since)
    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "timed_out": timed_out,
        "cursor": cursor,
    }


async def wait_for_disconnect(request: Request) -> None:
    """Return once the client has gone away."""
    while (await request.receive())["type"] != "http.disconnect":
        pass


@router.get("/poll")
async def poll(
    request: Request,
    conversation: str = Query(..., min_length=1),
    since: int = Query(0, ge=0, description="Epoch ms; only newer messages are returned"),
    wait: bool = False,
    timeout: Optional[int] = Query(None, ge=0, description="Wait budget in ms, capped at the ceiling"),
    store: ConversationStore = Depends(get_store),
    subscriptions: SubscriptionManager = Depends(get_subscriptions),
) -> dict:
    """
    Messages newer than `since`.

    With wait=false answers at once. With wait=true holds the request until
    something new arrives or the timeout elapses; a timeout is a normal 200
    with an empty list. A client that disconnects while waiting cancels the
    waiter, which releases its subscription at once.
    """
    await asyncio.to_thread(store.get_conversation, conversation)

    if not wait:
        messages = await subscriptions.fetch_since(conversation, since)
        return _poll_body(messages, since, timed_out=False)

    waiter = asyncio.ensure_future(subscriptions.wait_for_update(conversation, since, timeout))
    watcher = asyncio.ensure_future(wait_for_disconnect(request))
    try:
        await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not waiter.done():
            waiter.cancel()

    if not waiter.done() or waiter.cancelled():
        await asyncio.wait({waiter})
        logger.debug(
            "Long-poll client disconnected",
            extra={"conversation_id": conversation},
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    result = waiter.result()
    return _poll_body(result.messages, since, timed_out=result.timed_out)
