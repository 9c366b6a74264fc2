"""
Meta Transport Layer - Pydantic Schemas

PURE DATA MODELS - NO LOGIC
Only defines the contract between Meta webhooks / Graph API and the relay.
"""

from typing import Optional

from pydantic import BaseModel, Field

from store.types import Channel


# ============================================================================
# INBOUND MESSAGE (THE CONTRACT)
# ============================================================================

class InboundMessage(BaseModel):
    """
    One customer message pulled out of a Meta webhook.

    Same shape for WhatsApp and Messenger; the channel says which.
    """

    channel: Channel
    external_id: str = Field(..., description="Sender phone (WA) or PSID (FB)")
    source_id: Optional[str] = Field(
        None,
        description="Receiving phone_number_id (WA) or Page id (FB)"
    )
    customer_name: Optional[str] = Field(None, description="WhatsApp profile name")
    text: str = Field("", description="Message body. Empty for media-only messages.")
    timestamp_ms: int = Field(..., description="Message timestamp, epoch ms")
    provider_message_id: Optional[str] = Field(None, description="wamid / mid")

    class Config:
        frozen = True


# ============================================================================
# WEBHOOK PAYLOAD (INPUT)
# ============================================================================

class MetaWebhookPayload(BaseModel):
    """
    Webhook envelope shared by WhatsApp Cloud API and Messenger.

    ref: https://developers.facebook.com/docs/graph-api/webhooks/getting-started
    """

    object: str = Field(..., description="'whatsapp_business_account' or 'page'")
    entry: list[dict] = Field(default_factory=list, description="Webhook entries")

    class Config:
        extra = "allow"  # Meta may add fields


# ============================================================================
# GRAPH API RESPONSE (OUTPUT)
# ============================================================================

class SendResult(BaseModel):
    """What the Graph API told us after an outbound send."""

    channel: Channel
    recipient: str
    message_id: Optional[str] = None
    raw: dict = Field(default_factory=dict)
