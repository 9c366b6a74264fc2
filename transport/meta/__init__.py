"""Meta Transport Layer (WhatsApp + Messenger) - Module Exports"""

from .normalize import (
    NormalizationError,
    extract_inbound_messages,
    normalize_phone,
)
from .schemas import InboundMessage, MetaWebhookPayload, SendResult
from .security import compute_signature, verify_signature, verify_webhook_challenge
from .sender import MetaSenderError, send_message
from .webhook import ingest_message, router

__all__ = [
    # Schemas
    "InboundMessage",
    "MetaWebhookPayload",
    "SendResult",
    # Normalization
    "extract_inbound_messages",
    "normalize_phone",
    "NormalizationError",
    # Security
    "compute_signature",
    "verify_signature",
    "verify_webhook_challenge",
    # Sender
    "send_message",
    "MetaSenderError",
    # Router
    "ingest_message",
    "router",
]
