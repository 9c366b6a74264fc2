"""
Meta Input Normalization

PURE CONVERSION - NO STORAGE, NO NETWORK

Turns WhatsApp Cloud API and Messenger webhook payloads into InboundMessage
objects:
- WhatsApp: entry[].changes[].value.messages[], timestamps in seconds
- Messenger: entry[].messaging[], timestamps in milliseconds

Delivery/read receipts, echoes and unknown objects produce nothing.
"""

import logging
import re

from store.types import Channel

from .schemas import InboundMessage, MetaWebhookPayload

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"
MESSENGER_OBJECT = "page"


class NormalizationError(Exception):
    """Webhook payload is structurally broken."""
    pass


def extract_inbound_messages(payload: dict | MetaWebhookPayload) -> list[InboundMessage]:
    """
    Pull every customer message out of a webhook payload.

    A single malformed message is skipped (and logged); the rest of the batch
    still goes through.

    Args:
        payload: Raw webhook JSON

    Returns:
        Inbound messages in payload order

    Raises:
        NormalizationError: Payload is not a webhook envelope
    """
    if isinstance(payload, MetaWebhookPayload):
        payload = payload.model_dump()

    if not isinstance(payload, dict):
        raise NormalizationError("Payload is not a JSON object")

    entries = payload.get("entry") or []
    if not isinstance(entries, list):
        raise NormalizationError("'entry' is not a list")

    kind = payload.get("object")
    if kind == WHATSAPP_OBJECT:
        extract = _extract_whatsapp_entry
    elif kind == MESSENGER_OBJECT:
        extract = _extract_messenger_entry
    else:
        logger.info(f"Unhandled webhook object type: {kind}")
        return []

    messages: list[InboundMessage] = []
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object webhook entry")
            continue
        messages.extend(extract(entry))
    return messages


def _objects(container: dict, key: str, what: str) -> list[dict]:
    """Dict items of container[key]; anything else is skipped and logged."""
    items = container.get(key) or []
    if not isinstance(items, list):
        logger.warning(f"Skipping {what} list: '{key}' is not a list")
        return []
    objects = [item for item in items if isinstance(item, dict)]
    if len(objects) != len(items):
        logger.warning(f"Skipping {len(items) - len(objects)} non-object {what} item(s)")
    return objects


def _object(container: dict, key: str) -> dict:
    value = container.get(key)
    return value if isinstance(value, dict) else {}


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _extract_whatsapp_entry(entry: dict) -> list[InboundMessage]:
    messages = []
    for change in _objects(entry, "changes", "WhatsApp change"):
        value = _object(change, "value")
        phone_number_id = _object(value, "metadata").get("phone_number_id")
        names = {
            contact["wa_id"]: _object(contact, "profile").get("name")
            for contact in _objects(value, "contacts", "WhatsApp contact")
            if isinstance(contact.get("wa_id"), str)
        }

        for message in _objects(value, "messages", "WhatsApp message"):
            try:
                sender = message["from"]
                if not isinstance(sender, (str, int)):
                    raise TypeError(f"sender id is a {type(sender).__name__}")
                messages.append(InboundMessage(
                    channel=Channel.WHATSAPP,
                    external_id=str(sender),
                    source_id=phone_number_id,
                    customer_name=names.get(str(sender)),
                    text=_whatsapp_text(message),
                    timestamp_ms=int(message["timestamp"]) * 1000,
                    provider_message_id=message.get("id"),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed WhatsApp message: {e}")
    return messages


def _whatsapp_text(message: dict) -> str:
    """Text body, or the caption of a media message, or empty."""
    message_type = message.get("type")
    if message_type == "text":
        return _text(_object(message, "text").get("body"))
    media = message.get(message_type) if isinstance(message_type, str) else None
    if isinstance(media, dict):
        return _text(media.get("caption"))
    return ""


def _extract_messenger_entry(entry: dict) -> list[InboundMessage]:
    messages = []
    page_id = entry.get("id")

    for event in _objects(entry, "messaging", "Messenger event"):
        message = event.get("message")
        if not isinstance(message, dict) or message.get("is_echo"):
            # delivery / read / echo
            continue
        try:
            sender = event["sender"]["id"]
            if not isinstance(sender, (str, int)):
                raise TypeError(f"sender id is a {type(sender).__name__}")
            messages.append(InboundMessage(
                channel=Channel.MESSENGER,
                external_id=str(sender),
                source_id=str(page_id) if page_id is not None else None,
                text=_text(message.get("text")),
                timestamp_ms=int(event["timestamp"]),
                provider_message_id=message.get("mid"),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed Messenger event: {e}")
    return messages


def normalize_phone(raw: str, country_code: str = "961") -> str:
    """
    Turn a typed phone number into a WhatsApp id.

    Strips a leading '+' and every non-digit, then prefixes the default
    country code when the number does not already start with it.

    Raises:
        NormalizationError: Nothing left after stripping
    """
    number = raw.strip()
    if number.startswith("+"):
        number = number[1:]
    number = re.sub(r"\D+", "", number)
    if not number:
        raise NormalizationError(f"Not a phone number: {raw!r}")
    if country_code and not number.startswith(country_code):
        number = country_code + number
    return number
