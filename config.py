"""
Configuration management for the inbox relay.

Loads environment variables from .env file and provides typed access to
application settings. Fan-out and storage backends are configured in
infra/config.py.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(env_path)


class Config:
    """Configuration class for the inbox relay."""

    # Meta webhook
    META_VERIFY_TOKEN = os.getenv("META_VERIFY_TOKEN", "")
    META_APP_SECRET = os.getenv("META_APP_SECRET", "")

    # Graph API
    WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN", "")
    META_PAGE_TOKEN = os.getenv("META_PAGE_TOKEN", "")
    WHATSAPP_PHONE_NUMBER_ID_MAIN = os.getenv("WHATSAPP_PHONE_NUMBER_ID_MAIN", "")
    GRAPH_API_VERSION = os.getenv("GRAPH_API_VERSION", "v19.0")

    # Dashboard
    DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "961")
    CONVERSATION_LIST_LIMIT = int(os.getenv("CONVERSATION_LIST_LIMIT", "40"))

    # Server
    APP_PORT = int(os.getenv("APP_PORT", "8000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

    @classmethod
    def missing(cls) -> list[str]:
        """Required settings that are not set."""
        required = ["META_VERIFY_TOKEN", "WHATSAPP_TOKEN", "WHATSAPP_PHONE_NUMBER_ID_MAIN"]
        return [key for key in required if not getattr(cls, key)]

    @classmethod
    def validate(cls) -> bool:
        """Validate that required configuration is set."""
        return not cls.missing()
