"""
Dashboard conversation endpoints.

Read conversations and messages, reply, start a WhatsApp chat, mark read.
Writers notify viewers through the Dispatcher after their writes commit.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from config import Config
from realtime import Dispatcher
from store import Channel, ConversationStore, Direction
from transport.meta.normalize import NormalizationError, normalize_phone
from transport.meta.sender import MetaSenderError, send_message

from .deps import get_dispatcher, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["Dashboard"])

DEFAULT_GREETING = "Hello! 👋"


class ReplyRequest(BaseModel):
    text: str = ""


class StartChatRequest(BaseModel):
    phone: str = Field(..., min_length=1, description="e.g. 70123456 or +4479...")


@router.get("")
async def list_conversations(
    limit: int = Config.CONVERSATION_LIST_LIMIT,
    store: ConversationStore = Depends(get_store),
) -> dict:
    """Most recently active conversations first."""
    conversations = await asyncio.to_thread(store.list_conversations, max(1, min(limit, 200)))
    return {"conversations": [c.model_dump(mode="json") for c in conversations]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_conversation(
    request: StartChatRequest,
    store: ConversationStore = Depends(get_store),
) -> dict:
    """
    Open (or reuse) a WhatsApp conversation for a typed phone number.

    Nothing is sent; the agent replies from the conversation afterwards.
    """
    try:
        phone = normalize_phone(request.phone, Config.DEFAULT_COUNTRY_CODE)
    except NormalizationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    conversation = await asyncio.to_thread(store.find_conversation, Channel.WHATSAPP, phone)
    if conversation is None:
        conversation = await asyncio.to_thread(
            store.upsert_conversation,
            Channel.WHATSAPP,
            phone,
            Config.WHATSAPP_PHONE_NUMBER_ID_MAIN or None,
        )
        logger.info("Conversation started", extra={"conversation_id": conversation.id})

    return {"ok": True, "conversation_id": conversation.id}


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
) -> dict:
    conversation = await asyncio.to_thread(store.get_conversation, conversation_id)
    return conversation.model_dump(mode="json")


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    since: Optional[int] = None,
    store: ConversationStore = Depends(get_store),
) -> dict:
    """Full history, or only messages newer than `since` (epoch ms)."""
    conversation = await asyncio.to_thread(store.get_conversation, conversation_id)
    if since is None:
        messages = await asyncio.to_thread(store.list_messages, conversation_id)
    else:
        messages = await asyncio.to_thread(store.list_messages_since, conversation_id, since)
    return {
        "conversation": conversation.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in messages],
    }


@router.post("/{conversation_id}/reply")
async def reply(
    conversation_id: str,
    request: ReplyRequest,
    store: ConversationStore = Depends(get_store),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict:
    """
    Send a reply through the Graph API, store it, notify other viewers.

    Raises:
        HTTPException(404): Unknown conversation
        HTTPException(502): Graph API refused or unreachable
    """
    text = request.text.strip() or DEFAULT_GREETING
    conversation = await asyncio.to_thread(store.get_conversation, conversation_id)

    try:
        result = await send_message(
            conversation.channel,
            conversation.external_id,
            text,
            phone_number_id=conversation.source_id,
        )
    except MetaSenderError as e:
        logger.error(f"Reply failed: {e}", extra={"conversation_id": conversation_id})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Send failed: {e}")

    message = await asyncio.to_thread(store.create_message, conversation_id, Direction.OUTBOUND, text)
    await asyncio.to_thread(store.touch_conversation, conversation_id, message.timestamp)

    await dispatcher.notify_changed(
        conversation_id,
        summary={"direction": Direction.OUTBOUND.value, "message_id": message.id},
    )

    return {
        "ok": True,
        "conversation_id": conversation_id,
        "message": message.model_dump(mode="json"),
        "provider_message_id": result.message_id,
    }


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    store: ConversationStore = Depends(get_store),
) -> dict:
    await asyncio.to_thread(store.mark_read, conversation_id)
    return {"ok": True}
