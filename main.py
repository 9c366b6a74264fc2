"""
FastAPI Application Entry Point

Integrates:
  - Meta webhook (WhatsApp + Messenger)
  - Dashboard conversation endpoints
  - Realtime stream / long-poll endpoints
  - Health checks
  - Middleware for logging & error handling

Run: uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.conversations import router as conversations_router
from api.realtime import router as realtime_router
from config import Config
from infra import RelayBootstrap
from store import ConversationNotFoundError, StoreTimeoutError, StoreUnavailableError
from transport.meta import router as meta_router

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def create_app(relay: Optional[RelayBootstrap] = None) -> FastAPI:
    """
    Build the application.

    Args:
        relay: Pre-built components (tests). Built from the environment at
               startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan: startup and shutdown handlers.
        """
        # Startup
        app.state.relay = relay or RelayBootstrap()
        await app.state.relay.start()

        logger.info("=" * 60)
        logger.info("Inbox relay starting up...")
        logger.info(f"Environment: {Config.ENVIRONMENT}")
        logger.info(f"Relay: {app.state.relay!r}")
        missing = Config.missing()
        if missing:
            logger.warning(f"Missing settings: {', '.join(missing)}")
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("Inbox relay shutting down...")
        await app.state.relay.stop()

    app = FastAPI(
        title="Inbox Relay API",
        description="WhatsApp / Messenger dashboard relay with realtime fan-out",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict this in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        logger.debug(f"{request.method} {request.url.path}")
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Request error: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error"},
            )

    @app.exception_handler(ConversationNotFoundError)
    async def conversation_not_found(request: Request, exc: ConversationNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StoreTimeoutError)
    async def store_timeout(request: Request, exc: StoreTimeoutError):
        logger.warning(f"Store timeout on {request.url.path}: {exc}")
        return JSONResponse(status_code=504, content={"detail": "Conversation store timed out"})

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error(f"Store unavailable on {request.url.path}: {exc}")
        return JSONResponse(status_code=502, content={"detail": "Conversation store unavailable"})

    # Include routers
    app.include_router(meta_router)
    app.include_router(conversations_router)
    app.include_router(realtime_router)

    # Health check endpoints
    @app.get("/health/live")
    async def health_live():
        """Live health check (Kubernetes liveness probe)."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """Readiness: relay built and, when configured, the change feed listening."""
        relay: Optional[RelayBootstrap] = getattr(request.app.state, "relay", None)
        if relay is None:
            return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "starting"})

        feed_connected = relay.feed_connected
        body = {
            "status": "ready" if feed_connected is not False else "degraded",
            "feed": relay.config.feed_backend,
            "feed_connected": feed_connected,
            "subscriptions": relay.subscriptions.active_count(),
            "listeners": relay.bus.listener_count(),
        }
        return JSONResponse(status_code=200 if feed_connected is not False else 503, content=body)

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "Inbox Relay API",
            "version": APP_VERSION,
            "status": "running",
            "endpoints": {
                "meta_webhook": "GET|POST /webhooks/meta",
                "conversations": "GET|POST /conversations",
                "messages": "GET /conversations/{id}/messages",
                "reply": "POST /conversations/{id}/reply",
                "mark_read": "POST /conversations/{id}/read",
                "stream": "GET /stream?conversation=<id>",
                "poll": "GET /poll?conversation=<id>&since=<ms>&wait=<bool>",
                "health_live": "GET /health/live",
                "health_ready": "GET /health/ready",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=Config.APP_PORT,
        log_level=Config.LOG_LEVEL.lower(),
    )
