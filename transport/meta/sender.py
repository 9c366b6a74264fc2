"""
Meta Outbound Sender

Sends a plain text message through the Graph API.
- WhatsApp: POST /{phone_number_id}/messages with WHATSAPP_TOKEN
- Messenger: POST /me/messages with META_PAGE_TOKEN

No retries. Failures raise MetaSenderError and the caller decides.
"""

import logging
import os
from typing import Optional

import httpx

from store.types import Channel

from .schemas import SendResult

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_GRAPH_API_VERSION = "v19.0"


class MetaSenderError(Exception):
    """Failed to send a message through the Graph API."""
    pass


def _graph_url(path: str) -> str:
    version = os.getenv("GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION)
    return f"{GRAPH_BASE_URL}/{version}/{path.lstrip('/')}"


def build_request(
    channel: Channel,
    to: str,
    text: str,
    phone_number_id: Optional[str] = None,
) -> tuple[str, dict, str]:
    """
    Endpoint, JSON body and access token for one outbound text.

    Raises:
        MetaSenderError: Missing configuration
    """
    channel = Channel(channel)

    if channel == Channel.WHATSAPP:
        token = os.getenv("WHATSAPP_TOKEN")
        if not token:
            raise MetaSenderError("WHATSAPP_TOKEN not configured")
        phone_number_id = phone_number_id or os.getenv("WHATSAPP_PHONE_NUMBER_ID_MAIN")
        if not phone_number_id:
            raise MetaSenderError("No phone_number_id for WhatsApp send")
        body = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        return _graph_url(f"{phone_number_id}/messages"), body, token

    token = os.getenv("META_PAGE_TOKEN")
    if not token:
        raise MetaSenderError("META_PAGE_TOKEN not configured")
    body = {
        "messaging_type": "RESPONSE",
        "recipient": {"id": to},
        "message": {"text": text},
    }
    return _graph_url("me/messages"), body, token


async def send_message(
    channel: Channel,
    to: str,
    text: str,
    phone_number_id: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> SendResult:
    """
    Send a text message to a customer.

    Args:
        channel: WA or FB
        to: Phone number (WA) or PSID (FB)
        text: Message body
        phone_number_id: Sending WhatsApp number; defaults to
                         WHATSAPP_PHONE_NUMBER_ID_MAIN
        client: Optional shared httpx client

    Returns:
        SendResult with the provider message id

    Raises:
        MetaSenderError: Config missing, HTTP error or non-2xx answer
    """
    url, body, token = build_request(channel, to, text, phone_number_id)
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }

    try:
        if client is None:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.post(url, json=body, headers=headers, timeout=30.0)
        else:
            response = await client.post(url, json=body, headers=headers, timeout=30.0)
    except httpx.RequestError as e:
        logger.error(
            f"Graph API request failed: {e}",
            exc_info=True,
            extra={"channel": Channel(channel).value, "recipient": to},
        )
        raise MetaSenderError(f"HTTP request failed: {e}")

    if not response.is_success:
        error_text = response.text
        logger.error(
            f"Graph API error: {response.status_code} - {error_text}",
            extra={
                "status_code": response.status_code,
                "error_body": error_text,
            }
        )
        raise MetaSenderError(f"Graph API returned {response.status_code}: {error_text}")

    try:
        result = response.json()
    except ValueError:
        result = {}

    if Channel(channel) == Channel.WHATSAPP:
        message_id = (result.get("messages") or [{}])[0].get("id")
    else:
        message_id = result.get("message_id")

    logger.info(
        f"Message sent to {to}",
        extra={"channel": Channel(channel).value, "recipient": to, "response_id": message_id},
    )
    return SendResult(channel=channel, recipient=to, message_id=message_id, raw=result)
