"""
FastAPI dependencies.

Handlers never reach for module globals: the bootstrap built in the
application lifespan lives on app.state.relay and is injected from there.
"""

from fastapi import Depends, HTTPException, Request, status

from infra.bootstrap import RelayBootstrap
from realtime import Dispatcher, SubscriptionManager
from store import ConversationStore


def get_relay(request: Request) -> RelayBootstrap:
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay not initialized"
        )
    return relay


def get_store(relay: RelayBootstrap = Depends(get_relay)) -> ConversationStore:
    return relay.store


def get_dispatcher(relay: RelayBootstrap = Depends(get_relay)) -> Dispatcher:
    return relay.dispatcher


def get_subscriptions(relay: RelayBootstrap = Depends(get_relay)) -> SubscriptionManager:
    return relay.subscriptions
