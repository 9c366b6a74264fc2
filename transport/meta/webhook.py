"""
Meta Webhook Receiver

FastAPI router for WhatsApp Cloud API and Messenger webhooks.
Every inbound message is stored, then viewers of its conversation are
notified.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from api.deps import get_dispatcher, get_store
from realtime import Dispatcher
from store import ConversationStore, Direction

from .normalize import NormalizationError, extract_inbound_messages
from .schemas import InboundMessage
from .security import verify_signature, verify_webhook_challenge

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Meta Transport"])


# ============================================================================
# WEBHOOK CHALLENGE (Setup only)
# ============================================================================

@router.get("/meta", response_class=PlainTextResponse)
async def meta_webhook_challenge(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
) -> str:
    """
    Verify webhook subscription challenge from Meta.

    Returns:
        The challenge string (plain text)

    Raises:
        HTTPException(400): Invalid mode
        HTTPException(403): Invalid token
    """
    return verify_webhook_challenge(hub_mode, hub_challenge, hub_verify_token)


# ============================================================================
# WEBHOOK RECEIVER
# ============================================================================

async def ingest_message(
    message: InboundMessage,
    store: ConversationStore,
    dispatcher: Dispatcher,
) -> str:
    """
    Store one inbound message and notify its viewers.

    The notification goes out only after both writes have committed.

    Returns:
        Conversation id
    """
    conversation = await asyncio.to_thread(
        store.upsert_conversation,
        message.channel,
        message.external_id,
        message.source_id,
        message.customer_name,
        message.timestamp_ms,
    )
    stored = await asyncio.to_thread(
        store.create_message,
        conversation.id,
        Direction.INBOUND,
        message.text,
        message.timestamp_ms,
    )

    logger.info(
        "Inbound message stored",
        extra={
            "conversation_id": conversation.id,
            "channel": message.channel.value,
            "message_id": stored.id,
        },
    )

    await dispatcher.notify_changed(
        conversation.id,
        summary={"direction": Direction.INBOUND.value, "message_id": stored.id},
    )
    return conversation.id


@router.post("/meta")
async def meta_webhook_receiver(
    request: Request,
    store: ConversationStore = Depends(get_store),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict:
    """
    Receive WhatsApp / Messenger deliveries.

    Flow:
    1. Read raw body
    2. Verify signature (401 missing, 403 invalid)
    3. Extract inbound messages
    4. For each: upsert conversation, store message, notify viewers

    Meta expects a fast 200; store failures surface as 502/504 so Meta
    retries the delivery.
    """
    body = await request.body()
    await verify_signature(request, body)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Invalid JSON payload"
        )

    try:
        messages = extract_inbound_messages(payload)
    except NormalizationError as e:
        logger.warning(f"Rejected webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Normalization failed: {e}"
        )

    for message in messages:
        await ingest_message(message, store, dispatcher)

    return {"received": True}
