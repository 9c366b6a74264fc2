"""
Infrastructure module exports.

Configuration and bootstrap for the relay's long-lived components.
"""

from .config import FeedBackendType, RelayConfig, get_config
from .bootstrap import RelayBootstrap

__all__ = [
    "RelayConfig",
    "get_config",
    "FeedBackendType",
    "RelayBootstrap",
]
