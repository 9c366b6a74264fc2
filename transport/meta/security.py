"""
Meta Webhook Security

SECURITY BOUNDARY - Verify the subscription handshake and the HMAC signature
Meta puts on every webhook delivery.
"""

import hashlib
import hmac
import logging
import os

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def compute_signature(app_secret: str, body: bytes) -> str:
    """Value Meta sends in X-Hub-Signature-256 for this body."""
    return "sha256=" + hmac.new(
        key=app_secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256
    ).hexdigest()


async def verify_signature(request: Request, body: bytes) -> bool:
    """
    Verify Meta HMAC-SHA256 signature on a webhook delivery.

    Meta signs the raw body with the app secret and sends the result in the
    X-Hub-Signature-256 header. When META_APP_SECRET is not configured the
    check is skipped.

    Raises:
        HTTPException(401): Missing signature
        HTTPException(403): Invalid signature

    Returns:
        True if the signature was checked, False if verification is disabled
    """
    app_secret = os.getenv("META_APP_SECRET")
    if not app_secret:
        logger.debug("META_APP_SECRET not set, skipping signature verification")
        return False

    signature = request.headers.get("X-Hub-Signature-256")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Hub-Signature-256 header"
        )

    # constant-time compare
    if not hmac.compare_digest(signature, compute_signature(app_secret, body)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid signature"
        )
    return True


def verify_webhook_challenge(
    hub_mode: str | None,
    hub_challenge: str | None,
    hub_verify_token: str | None,
) -> str:
    """
    Verify the webhook subscription handshake.

    Meta calls GET /webhooks/meta with hub.mode=subscribe, hub.challenge and
    hub.verify_token. We check the token and echo the challenge.

    Raises:
        HTTPException(400): Invalid mode
        HTTPException(403): Invalid token
    """
    expected_token = os.getenv("META_VERIFY_TOKEN", "")

    if hub_mode != "subscribe":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid hub.mode"
        )

    if not expected_token or not hub_verify_token or not hmac.compare_digest(
        hub_verify_token, expected_token
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid hub.verify_token"
        )

    return hub_challenge or ""
